#!/usr/bin/env python3
"""Main entry point for the AIF governance control plane.

Usage:
    python main.py serve              # run the HTTP API
    python main.py verify             # recompute the ledger hash chain
    python main.py classify "text"    # preview the tier for a problem statement
"""

import argparse
import json
import sys
from typing import List, Optional

from aif_governance.common.config import get_config
from aif_governance.common.exceptions import GovernanceError
from aif_governance.common.logging import get_logger

logger = get_logger(__name__)


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    config = get_config()
    uvicorn.run(
        "aif_governance.api.gateway:app",
        host=args.host or config.api_host,
        port=args.port or config.api_port,
        reload=config.is_development,
        log_level=config.log_level.value.lower(),
    )
    return 0


def _verify(args: argparse.Namespace) -> int:
    from aif_governance.api.service import GovernanceService

    service = GovernanceService()
    report = service.verify_ledger()
    print(json.dumps(report, indent=2))
    return 0 if report["valid"] else 1


def _classify(args: argparse.Namespace) -> int:
    from aif_governance.api.service import GovernanceService

    service = GovernanceService()
    preview = service.classify(problem_statement=args.problem_statement)
    preview["controls"] = preview["controls"].model_dump(mode="json", by_alias=True)
    print(json.dumps(preview, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(prog="aif-governance", description="Agent governance control plane")
    sub = parser.add_subparsers(dest="command", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP API")
    p_serve.add_argument("--host", default=None)
    p_serve.add_argument("--port", type=int, default=None)
    p_serve.set_defaults(func=_serve)

    p_verify = sub.add_parser("verify", help="Verify the ledger hash chain")
    p_verify.set_defaults(func=_verify)

    p_classify = sub.add_parser("classify", help="Preview tier and controls")
    p_classify.add_argument("problem_statement", help="Free-text description of the agent")
    p_classify.set_defaults(func=_classify)

    args = parser.parse_args(argv)
    config = get_config()
    logger.info(f"AIF governance starting in {config.environment.value} mode")
    logger.info(f"Policy pack: {config.resolved_policy_file}")

    try:
        return args.func(args)
    except GovernanceError as e:
        logger.error(f"{e.code}: {e.message}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
