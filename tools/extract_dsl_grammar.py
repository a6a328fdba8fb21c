#!/usr/bin/env python3
"""
Extract the RULESIM DSL grammar from the docstring of src/rulesim.py and write
it to docs/grammar.ebnf.

The grammar lives between:
  DSL_GRAMMAR_BEGIN
  DSL_GRAMMAR_END

Usage:
  python3 tools/extract_dsl_grammar.py [source.py] [out.ebnf]
"""
from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src" / "rulesim.py"
OUT = ROOT / "docs" / "grammar.ebnf"

GRAMMAR_RE = re.compile(r"DSL_GRAMMAR_BEGIN\n(.*?)\n\s*DSL_GRAMMAR_END", flags=re.S)


def extract_grammar(text: str) -> Optional[str]:
    m = GRAMMAR_RE.search(text)
    if not m:
        return None
    return m.group(1).strip() + "\n"


def main(argv: list[str]) -> int:
    src = Path(argv[1]) if len(argv) > 1 else SRC
    out = Path(argv[2]) if len(argv) > 2 else OUT

    grammar = extract_grammar(src.read_text(encoding="utf-8", errors="replace"))
    if grammar is None:
        print(f"[extract_dsl_grammar] ERROR: No grammar block found in {src}", file=sys.stderr)
        return 2

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(grammar, encoding="utf-8")

    print(f"[extract_dsl_grammar] Wrote {out}")
    return 0

if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
