from lancer.cli.__main__ import main

main()
