"""Allow ``python -m consultation``."""

from consultation.cli import main

main()
