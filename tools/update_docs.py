#!/usr/bin/env python3
"""
Inject docs/grammar.ebnf into DSL_MANUAL.md.

Injection markers inside DSL_MANUAL.md:
  <!-- AUTO-GENERATED-GRAMMAR-BEGIN -->
  <!-- AUTO-GENERATED-GRAMMAR-END -->

Run tools/extract_dsl_grammar.py first.

Usage:
  python3 tools/update_docs.py [grammar.ebnf] [manual.md]
"""
from __future__ import annotations

import re
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parents[1]
GRAMMAR = ROOT / "docs" / "grammar.ebnf"
MANUAL = ROOT / "DSL_MANUAL.md"

BEGIN = "<!-- AUTO-GENERATED-GRAMMAR-BEGIN -->"
END   = "<!-- AUTO-GENERATED-GRAMMAR-END -->"

SECTION_RE = re.compile(re.escape(BEGIN) + r".*?" + re.escape(END), flags=re.S)


def inject_grammar(md: str, grammar: str) -> Optional[str]:
    """Return md with the marked section replaced, or None if the markers are missing."""
    if not SECTION_RE.search(md):
        return None
    section = f"{BEGIN}\n\n```ebnf\n{grammar.rstrip()}\n```\n\n{END}"
    # a callable replacement keeps backslashes in the grammar literal
    return SECTION_RE.sub(lambda _: section, md, count=1)


def main(argv: list[str]) -> int:
    grammar_path = Path(argv[1]) if len(argv) > 1 else GRAMMAR
    manual = Path(argv[2]) if len(argv) > 2 else MANUAL

    if not grammar_path.exists():
        print(f"[update_docs] ERROR: Missing {grammar_path}. Run extract_dsl_grammar.py first.", file=sys.stderr)
        return 2

    grammar = grammar_path.read_text(encoding="utf-8", errors="replace")
    md = inject_grammar(manual.read_text(encoding="utf-8", errors="replace"), grammar)
    if md is None:
        print(f"[update_docs] ERROR: Injection markers not found in {manual}", file=sys.stderr)
        return 3

    manual.write_text(md, encoding="utf-8")

    print(f"[update_docs] Updated {manual}")
    return 0

if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
