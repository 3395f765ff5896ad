"""Entry point for `python -m talkah_cli` and the `talkah` console script."""

from __future__ import annotations

from talkah_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
