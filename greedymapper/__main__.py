from greedymapper.app import main

main()
