from __future__ import annotations

from typing import Optional, Sequence

from .cli import build_arg_parser, run_cli


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    return run_cli(args)


if __name__ == "__main__":
    raise SystemExit(main())
