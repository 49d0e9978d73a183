"""
Mirror registry — local signals shadowing remote ones, plus the relay chains built on them.

Bindings live here, keyed by mirror signal identity, rather than as user data
on runtime signal objects. The registry is only touched from the polling
thread, so it takes no locks.

Depends on: config, models, mesh/runtime
"""

import itertools
import sys
from typing import Any, Optional

from greedymapper.config import LOG_PREFIX, MIRROR_NAME_PREFIX
from greedymapper.mesh.runtime import MeshRuntime
from greedymapper.models import (
    MapKey,
    MirrorBinding,
    MirrorRole,
    RelayChain,
    Signal,
    SignalRef,
)


class MirrorRegistry:
    """At most one mirror per (remote signal, role, scope) for the life of the process.

    scope is None for mirrors shared by every map touching the remote signal,
    and the source ref for output mirrors that belong to a single map.
    """

    def __init__(self, runtime: MeshRuntime):
        self._runtime = runtime
        self._bindings: dict[tuple[SignalRef, MirrorRole, Optional[SignalRef]], MirrorBinding] = {}
        self._by_mirror: dict[SignalRef, MirrorBinding] = {}
        self._chains: dict[MapKey, RelayChain] = {}
        self._counter = itertools.count()

    # -- Mirrors --

    def get(self, remote: SignalRef, role: MirrorRole,
            scope: Optional[SignalRef] = None) -> Optional[MirrorBinding]:
        return self._bindings.get((remote, role, scope))

    def binding_for(self, mirror: SignalRef) -> Optional[MirrorBinding]:
        """Reverse lookup: the binding a local mirror signal belongs to."""
        return self._by_mirror.get(mirror)

    def get_or_create(self, remote: Signal, role: MirrorRole,
                      scope: Optional[SignalRef] = None) -> Signal:
        """Return the mirror for (remote, role, scope), creating it on first sight."""
        existing = self._bindings.get((remote.ref, role, scope))
        if existing is not None:
            return existing.mirror

        name = f"{MIRROR_NAME_PREFIX}/{next(self._counter)}"
        binding = MirrorBinding(remote=remote.ref, role=role, mirror=None)

        if role == MirrorRole.RELAY_DESTINATION:
            mirror = self._runtime.add_input(
                name, remote.length, remote.value_type,
                minimum=remote.minimum, maximum=remote.maximum,
                handler=lambda sig, value, b=binding: self._forward(b, value),
            )
        else:
            mirror = self._runtime.add_output(
                name, remote.length, remote.value_type,
                minimum=remote.minimum, maximum=remote.maximum,
            )

        binding.mirror = mirror
        self._bindings[(remote.ref, role, scope)] = binding
        self._by_mirror[mirror.ref] = binding
        print(f"{LOG_PREFIX} Created mirror {mirror.ref} for {remote.ref} ({role.value})", file=sys.stderr)
        return mirror

    def add_target(self, mirror: SignalRef, target: SignalRef) -> bool:
        """Register a downstream target for an input mirror. Returns False if already present."""
        binding = self._by_mirror.get(mirror)
        if binding is None:
            raise KeyError(f"{mirror} is not a registered mirror")
        if target in binding.targets:
            return False
        binding.targets.append(target)
        return True

    def bindings(self) -> list[MirrorBinding]:
        return list(self._by_mirror.values())

    def _forward(self, binding: MirrorBinding, value: Any) -> None:
        """Push a received value, unchanged, to every downstream target."""
        for target in binding.targets:
            self._runtime.update(target, value)

    # -- Relay chains --

    def chain(self, key: MapKey) -> Optional[RelayChain]:
        """The relay chain that replaced the map with this key, if any."""
        return self._chains.get(key)

    def add_chain(self, chain: RelayChain) -> None:
        self._chains[chain.key] = chain

    def chains(self) -> list[RelayChain]:
        return list(self._chains.values())

    def drop_chain(self, key: MapKey) -> Optional[RelayChain]:
        return self._chains.pop(key, None)

    def chains_using(self, hop: MapKey) -> list[RelayChain]:
        """Chains that have hop as their downstream or one of their bypass hops."""
        return [c for c in self._chains.values() if c.downstream == hop or hop in c.bypass]

    # -- Teardown --

    def clear(self) -> None:
        """Forget everything. The mirror counter keeps running."""
        self._bindings.clear()
        self._by_mirror.clear()
        self._chains.clear()
