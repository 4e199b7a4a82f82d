"""Run the pcpfwd command line interface."""

from pcpfwd.cli.main import main

if __name__ == "__main__":
    main()
