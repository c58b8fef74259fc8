"""
Module entrypoint for the stackrestore CLI.

This file exists so that `python -m stackrestore ...` works consistently in all
environments, including when the console-script wrapper is not installed.

Notes
-----
This module contains no business logic. It delegates to the CLI module.
"""

from __future__ import annotations

from stackrestore.cli import main


def _run() -> None:
    """
    Execute the stackrestore command line interface.

    Raises
    ------
    SystemExit
        Always; carries the CLI exit code.
    """
    raise SystemExit(main())


if __name__ == "__main__":
    _run()
