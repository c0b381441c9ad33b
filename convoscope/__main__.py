"""Entry point for ``python -m convoscope``."""
from convoscope.app import main

if __name__ == "__main__":
    main()
