"""Module entrypoint for `python -m projectdeck`."""

from projectdeck.cli import run

if __name__ == "__main__":
    raise SystemExit(run())
