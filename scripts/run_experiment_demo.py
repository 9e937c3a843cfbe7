#!/usr/bin/env python3
"""
Run full experiment demo: create -> simulate traffic -> sequential stop -> report.

Creates artifacts/experiments/<id>/analysis.json, exec_summary.html and plots.
"""

import logging
import sys
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    experiment_id = "demo_sequential_001"
    artifacts_dir = ROOT / "artifacts" / "experiments"
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    print("1. Simulating traffic with sequential evaluation...")
    from src.experiment_engine.simulate_campaign import run_demo
    summary = run_demo(
        experiment_id=experiment_id,
        artifacts_dir=str(artifacts_dir),
    )
    print(f"   Assigned: {summary['assigned']}")
    print(f"   Converted: {summary['converted']}")

    print("2. Outcome")
    print(f"   Status: {summary['status']} ({summary['stop_reason']})")
    print(f"   Winner: {summary['winner'] or 'none'}")

    out_dir = artifacts_dir / experiment_id
    print(f"\n[OK] Demo complete. Artifacts in {out_dir}:")
    for f in sorted(out_dir.iterdir()):
        print(f"   - {f.name}")


if __name__ == "__main__":
    main()
