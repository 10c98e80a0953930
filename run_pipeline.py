#!/usr/bin/env python
# run_pipeline.py

import argparse
import os
import subprocess
import sys
from pathlib import Path

project_root = Path(__file__).resolve().parent

STEPS = [
    "scripts/01_filter_and_trim.py",
    "scripts/02_denoise_dada2.py",
    "scripts/03_diversity_analysis.py",
    "scripts/04_family_ratio_analysis.py",
]


def main():
    """
    Run the amplicon pipeline from raw reads to family ratios, one script per step.
    Each step reads the tables written by the previous one.
    """
    parser = argparse.ArgumentParser(description='Run the full amplicon pipeline')
    parser.add_argument('--config', default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--start-at', type=int, default=1, choices=range(1, len(STEPS) + 1),
                        help='Step to start from (default: 1)')
    parser.add_argument('--log-file', default=None, help='Log file shared by all steps')
    args = parser.parse_args()

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    if not os.path.exists(config_path):
        print(f"Error: Configuration file not found: {args.config}")
        return 1

    for step in STEPS[args.start_at - 1:]:
        cmd = [sys.executable, str(project_root / step), "--config", str(config_path)]
        if args.log_file:
            cmd += ["--log-file", args.log_file]

        try:
            print(f"Executing: {' '.join(cmd)}")
            subprocess.run(cmd, check=True)
        except subprocess.CalledProcessError as e:
            print(f"Error running {step}: {e}")
            return 1

    print("Pipeline completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
