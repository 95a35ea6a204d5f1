from stageci.cli import main

main()
