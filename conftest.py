"""
pytest glue for the standalone test scripts.

The scripts record each check through report() into a module-level results
list. Under pytest, a test fails if any check it recorded failed.
"""

import pytest


@pytest.fixture(autouse=True)
def failed_checks_fail_the_test(request):
    results = getattr(request.module, "results", None)
    if results is None:
        yield
        return
    start = len(results)
    yield
    failed = [f"{name}: {detail}" if detail else name
              for name, passed, detail in results[start:] if not passed]
    if failed:
        pytest.fail("; ".join(failed), pytrace=False)
