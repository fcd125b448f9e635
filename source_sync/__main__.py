"""Entry point for Source Sync.

Usage:
    python -m source_sync             Run the agent until interrupted
    python -m source_sync --version   Print the version and exit
"""

import sys


def main() -> None:
    """Run the agent or print the version."""
    if len(sys.argv) > 1 and sys.argv[1] in ("--version", "-V"):
        from source_sync import __app_name__, __version__

        print(f"{__app_name__} {__version__}")
    else:
        from source_sync.app import App

        app = App()
        app.run()


if __name__ == "__main__":
    main()
