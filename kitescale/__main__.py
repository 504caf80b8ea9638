from kitescale.cli import main

main()
