#!/usr/bin/env python3
"""
Run the transaction parse pipeline on a saved AI response.

Usage:
    python backend/scripts/parse_ai_response.py response.txt
    python backend/scripts/parse_ai_response.py response.txt --original "sáng cf 25k, trưa cơm 45k"

    # Read the response from stdin and post-process the result:
    cat response.txt | python backend/scripts/parse_ai_response.py - --postprocess
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Allow running from project root with PYTHONPATH=backend
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from expense_parser.core.config import get_settings  # noqa: E402
from expense_parser.services.ai.transaction_parse.contracts import ParsePolicy  # noqa: E402
from expense_parser.services.ai.transaction_parse.service import run_parse_pipeline  # noqa: E402
from expense_parser.services.transaction_postprocess import (  # noqa: E402
    postprocess_result,
    summarize_transactions,
)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Parse a raw AI response into transactions")
    parser.add_argument("response", help="File with the AI response text, or - for stdin")
    parser.add_argument("--original", default=None, help="The user's original input text")
    parser.add_argument("--postprocess", action="store_true", help="Normalise, tag and de-duplicate")
    parser.add_argument("--verbose", action="store_true", help="Log pipeline stages to stderr")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, stream=sys.stderr)

    if args.response == "-":
        text = sys.stdin.read()
    else:
        text = Path(args.response).read_text(encoding="utf-8")

    outcome = run_parse_pipeline(text, args.original, policy=ParsePolicy.from_settings(get_settings()))
    result = outcome.result
    payload = {}
    if args.postprocess and result.transactions:
        result = postprocess_result(result)
        payload["transaction_summary"] = summarize_transactions(result.transactions).model_dump()
    payload = {**result.model_dump(mode="json", exclude_unset=True), **payload}

    print(json.dumps(payload, ensure_ascii=False, indent=2))
    print(
        f"strategy={outcome.strategy} attempted={','.join(outcome.attempted)} latency_ms={outcome.latency_ms}",
        file=sys.stderr,
    )
    return 0 if result.transactions else 1


if __name__ == "__main__":
    sys.exit(main())
