"""Allow ``python -m printlink``."""

from printlink.cli.main import main

main()
