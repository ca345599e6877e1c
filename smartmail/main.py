"""
SmartMail command line entry point.

    smartmail run fullProcess --user me@example.com --batch-size 50
    smartmail status batch_1718000000000_a1b2c3d4e
    smartmail history --user me@example.com
    smartmail set-credential --user me@example.com --access-token ... --refresh-token ...

Results are printed as JSON on stdout; logs go to stderr and the log file.
"""

import argparse
import json
import logging
import sys
from typing import Dict, List, Optional

from .__version__ import __version__
from .core.circuit_breaker import CircuitBreaker
from .core.classifier import ClassificationEngine
from .core.errors import NotFoundError, RequiresReauthError, SmartMailError, ValidationError
from .core.models import Credential, Operation
from .core.orchestrator import BatchOrchestrator
from .core.rate_limiter import RateLimiter
from .providers.factory import ProviderFactory
from .providers.gmail_provider import GmailProvider
from .storage import PersistentStore, create_store
from .utils.config import load_config
from .utils.logger import logger

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_REAUTH = 2


def build_orchestrator(config: Dict, store: Optional[PersistentStore] = None) -> BatchOrchestrator:
    """Wire store, limiter, breaker, AI provider and Gmail client from config."""
    store = store or create_store(config.get("storage"))
    breaker_cfg = config.get("circuit_breaker", {})
    engine = ClassificationEngine(
        provider=ProviderFactory.from_config(config),
        rate_limiter=RateLimiter(store, config.get("rate_limit")),
        ai_enabled=config.get("ai_enabled", False),
        circuit_breaker=CircuitBreaker(
            failure_threshold=breaker_cfg.get("failure_threshold", 3),
            recovery_timeout=breaker_cfg.get("recovery_timeout", 30.0),
        ),
    )
    gmail_cfg = config.get("gmail", {})
    return BatchOrchestrator(
        store,
        lambda: GmailProvider(gmail_cfg),
        engine,
        config=config.get("batch"),
    )


def _print(payload) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + "\n")


def _cmd_run(orchestrator: BatchOrchestrator, args) -> int:
    options = {}
    if args.batch_size is not None:
        options["batchSize"] = args.batch_size
    if args.limit is not None:
        options["limit"] = args.limit
    if args.query:
        options["query"] = args.query

    credential = orchestrator.store.get_credential(args.user)
    if credential is None:
        _print({"error": f"No stored credential for {args.user}", "requiresReauth": True})
        return EXIT_REAUTH

    batch_id = orchestrator.create(args.user, args.operation, options)
    try:
        orchestrator.execute(batch_id, credential)
    except RequiresReauthError as e:
        _print({"batch": orchestrator.status(batch_id).to_dict(), "error": str(e), "requiresReauth": True})
        return EXIT_REAUTH
    except SmartMailError as e:
        _print({"batch": orchestrator.status(batch_id).to_dict(), "error": str(e)})
        return EXIT_FAILED

    _print({"batch": orchestrator.status(batch_id).to_dict()})
    return EXIT_OK


def _cmd_status(orchestrator: BatchOrchestrator, args) -> int:
    job = orchestrator.status(args.batch_id)
    _print(job.to_dict())
    return EXIT_FAILED if job.status.value == "failed" else EXIT_OK


def _cmd_history(orchestrator: BatchOrchestrator, args) -> int:
    _print([job.to_dict() for job in orchestrator.history(args.user, args.limit)])
    return EXIT_OK


def _cmd_set_credential(orchestrator: BatchOrchestrator, args) -> int:
    orchestrator.store.save_credential(
        args.user, Credential(access_token=args.access_token, refresh_token=args.refresh_token)
    )
    _print({"user": args.user, "saved": True})
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="smartmail", description="AI-assisted Gmail triage")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Path to config.json")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Create and execute a batch job")
    run.add_argument("operation", choices=[op.value for op in Operation])
    run.add_argument("--user", required=True)
    run.add_argument("--batch-size", type=int)
    run.add_argument("--limit", type=int)
    run.add_argument("--query")
    run.set_defaults(handler=_cmd_run)

    status = sub.add_parser("status", help="Show one batch job")
    status.add_argument("batch_id")
    status.set_defaults(handler=_cmd_status)

    history = sub.add_parser("history", help="List recent batch jobs for a user")
    history.add_argument("--user", required=True)
    history.add_argument("--limit", type=int, default=20)
    history.set_defaults(handler=_cmd_history)

    cred = sub.add_parser("set-credential", help="Store a user's OAuth tokens")
    cred.add_argument("--user", required=True)
    cred.add_argument("--access-token", required=True)
    cred.add_argument("--refresh-token")
    cred.set_defaults(handler=_cmd_set_credential)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    logger.setLevel(getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO))

    orchestrator = build_orchestrator(config)
    try:
        return args.handler(orchestrator, args)
    except (ValidationError, NotFoundError) as e:
        _print({"error": str(e)})
        return EXIT_FAILED
    except Exception as e:
        logger.error(f"Unhandled error in {args.command}: {e}", exc_info=True)
        _print({"error": str(e)})
        return EXIT_FAILED
    finally:
        orchestrator.store.close()


if __name__ == "__main__":
    sys.exit(main())
