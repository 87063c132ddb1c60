"""Console-script entry point for :mod:`lifelogd`."""

from __future__ import annotations

from lifelogd.cli import create_app


def main() -> None:
    """Execute the CLI application.

    Example:
        >>> from lifelogd.__main__ import main
        >>> main()  # doctest: +SKIP
    """

    app = create_app()
    app(prog_name="lifelogd")


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    main()


__all__ = ["main"]
