from screenshare.cli import main

main()
