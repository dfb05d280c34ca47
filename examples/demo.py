#!/usr/bin/env python3
"""
Consilium Demo -- a multi-doctor consultation on sample patient cases.

Run:
    python examples/demo.py

Doctors configured without an api_key answer with simulated replies, so the
demo runs offline. Add keys in ~/.config/consilium/config.yaml to use real models.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure consilium is importable when running from the repo root.
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from consilium.config import get_config
from consilium.pipeline import ConsultationEngine


DEMO_CASES = [
    {
        "case": {
            "name": "Mr. Zhang",
            "gender": "male",
            "age": 61,
            "past_history": "Chronic hepatitis B for 20 years, irregular antiviral treatment.",
            "current_problem": "Dull right upper quadrant pain and 5 kg weight loss over two months.",
        },
        "description": "Hepatology case with a suspicious liver lesion.",
    },
    {
        "case": {
            "name": "Ms. Li",
            "gender": "female",
            "age": 34,
            "past_history": "No chronic illness.",
            "current_problem": "Three weeks of dry cough, low-grade fever and night sweats.",
        },
        "description": "Respiratory case with a broad differential.",
    },
]


def run_demo(index: int | None = None) -> None:
    """Run one or all demo cases through a consultation."""
    config = get_config()
    cases = DEMO_CASES if index is None else [DEMO_CASES[index]]

    for i, item in enumerate(cases):
        num = index if index is not None else i
        engine = ConsultationEngine(config)
        print(f"\n{'=' * 72}")
        print(f"  Demo {num + 1}: {item['description']}")
        print(f"  Doctors: {', '.join(doc.name for doc in engine.doctors)}")
        print(f"{'=' * 72}")
        print(f"\n  Problem: {item['case']['current_problem']}\n")

        engine.start(case=item["case"])
        snapshot = engine.snapshot()

        eliminated = [d["name"] for d in snapshot["doctors"] if d["status"] == "eliminated"]
        summary = snapshot["final_summary"]
        print(f"  Rounds: {snapshot['workflow']['current_round']}")
        print(f"  Eliminated: {', '.join(eliminated) if eliminated else 'nobody'}")
        print(f"  Summary by: {summary.get('doctor_name') or 'nobody'} ({summary.get('status')})")
        print(f"\n  Summary:\n")
        for line in (summary.get("content") or "(no summary)").splitlines():
            print(f"    {line}")
        print()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        description="Run Consilium demo cases through a multi-doctor consultation."
    )
    parser.add_argument(
        "--case",
        "-c",
        type=int,
        choices=range(1, len(DEMO_CASES) + 1),
        help="Run a specific demo case (1-%d)" % len(DEMO_CASES),
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List available demo cases and exit.",
    )
    args = parser.parse_args()

    if args.list:
        print("\nAvailable demo cases:\n")
        for i, item in enumerate(DEMO_CASES, 1):
            print(f"  {i}. {item['case']['name']}: {item['case']['current_problem']}")
            print(f"     {item['description']}\n")
        return

    idx = (args.case - 1) if args.case else None
    run_demo(idx)


if __name__ == "__main__":
    main()
