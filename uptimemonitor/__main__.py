"""Allow running the package with ``python -m uptimemonitor``."""

from . import main

main()
