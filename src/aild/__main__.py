from aild.cli import main

main()
