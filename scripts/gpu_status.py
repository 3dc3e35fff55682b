#!/usr/bin/env python3
"""Query GPU capability, negotiate a profile and run the self-test.

Usage:
    python scripts/gpu_status.py
    python scripts/gpu_status.py --force_reduced --json
    python scripts/gpu_status.py --device cpu --allow_emulation

Exit codes:
    0: device usable (self-test passed)
    1: device usable but degraded (self-test failed; safe fallback profile)
    2: no usable device
"""

import argparse
import json
import logging
import sys

from cnidaria.errors import CapabilityUnavailable
from cnidaria.gpu.capability import (
    GPUContext,
    calculate_dispatch_groups,
    capability_status,
    check_requirements,
    run_self_test,
)
from cnidaria.utils import logging_config


def parse_args():
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Report GPU capability and run the self-test",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--device', type=str, default=None, help='Explicit torch device (cuda:0, mps, cpu)')
    parser.add_argument('--force_reduced', action='store_true', help='Force Reduced dispatch mode')
    parser.add_argument('--allow_emulation', action='store_true', help='Allow the CPU as an emulated device')
    parser.add_argument('--budget_ms', type=float, default=50.0, help='Self-test time budget, default: 50')
    parser.add_argument('--json', action='store_true', help='Print a JSON report instead of text')
    parser.add_argument('--verbose', action='store_true', help='Enable verbose logging')
    return parser.parse_args()


def main():
    args = parse_args()
    logging_config.setup_logging(log_level='DEBUG' if args.verbose else 'WARNING', context={"app": "gpu_status"})
    logger = logging.getLogger(__name__)

    try:
        ctx = GPUContext.init(args.device, force_reduced=args.force_reduced, allow_emulation=args.allow_emulation)
    except CapabilityUnavailable as e:
        report = check_requirements(None)
        if args.json:
            print(json.dumps({"available": False, "error": str(e), "issues": report.issues}, indent=2))
        else:
            logger.error("No usable device: %s", e)
            for rec in report.recommendations:
                print(f"  - {rec}")
        return 2

    with ctx:
        self_test = run_self_test(ctx, budget_ms=args.budget_ms)
        requirements = check_requirements(ctx.limits)
        groups = calculate_dispatch_groups(ctx.profile, 512, 512)
        status = capability_status(ctx)

    if args.json:
        print(json.dumps({
            "status": status,
            "self_test": {
                "success": self_test.success,
                "timing_ms": round(self_test.timing_ms, 3),
                "attempts": self_test.attempts,
                "message": self_test.message,
            },
            "requirements": {
                "compatible": requirements.compatible,
                "issues": requirements.issues,
                "recommendations": requirements.recommendations,
            },
            "dispatch_512x512": [groups.x, groups.y, groups.z],
        }, indent=2))
    else:
        wg = status["workgroup"]
        print(f"Device:      {status['device_name']} ({status['device']}{', emulated' if status['emulated'] else ''})")
        print(f"Mode:        {status['mode']}{' (degraded)' if status['degraded'] else ''}")
        print(f"Workgroup:   {wg['x']}x{wg['y']}x{wg['z']} ({wg['total']} invocations)")
        print(f"Tiles:       {status['tile_px']} px, {status['per_frame_budget']} per frame")
        print(f"Precision:   {status['dtype']}")
        print(f"512x512:     {groups.x}x{groups.y}x{groups.z} workgroups")
        print(f"Self-test:   {self_test.message}")
        print(f"Status:      {status['message']}")
        for issue in requirements.issues:
            print(f"  ! {issue}")
        for rec in requirements.recommendations:
            print(f"  - {rec}")

    return 0 if self_test.success else 1


if __name__ == '__main__':
    sys.exit(main())
