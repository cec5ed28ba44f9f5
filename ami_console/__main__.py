from ami_console.engine import main

main()
