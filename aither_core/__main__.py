"""Allow running the core process as a module: python -m aither_core."""

from aither_core.runner import main

if __name__ == "__main__":
    main()
