from leadminer.cli import main

main()
