from filebroker.cli import main

main()
