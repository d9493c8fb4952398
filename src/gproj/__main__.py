"""Allow ``python -m gproj``."""

from .cli import main

main()
