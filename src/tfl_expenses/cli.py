from __future__ import annotations

import argparse
import asyncio
import json
import mimetypes
import sys
from pathlib import Path

from tfl_expenses.modules.extraction.errors import ExtractionError
from tfl_expenses.modules.extraction.models import StatementFile
from tfl_expenses.modules.extraction.service import extract_files


def _load(path: Path) -> StatementFile:
    content_type, _ = mimetypes.guess_type(path.name)
    return StatementFile(name=path.name, body=path.read_bytes(), content_type=content_type)


def _progress(message: str, percent: float) -> None:
    print(f"[{percent:5.1f}%] {message}", file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tfl-expenses",
        description="Extract journey charges (date, amount) from transport statements.",
    )
    parser.add_argument("files", nargs="+", type=Path, help="CSV, PDF, image or text statements")
    parser.add_argument("--json", action="store_true", help="print entries as JSON")
    parser.add_argument("--quiet", action="store_true", help="suppress progress output")
    args = parser.parse_args(argv)

    try:
        files = [_load(p) for p in args.files]
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    try:
        entries = asyncio.run(
            extract_files(files, on_progress=None if args.quiet else _progress)
        )
    except ExtractionError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
    else:
        for e in entries:
            print(f"{e.date.isoformat()}  {e.key[1]}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
