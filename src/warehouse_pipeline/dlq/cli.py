"""
Command-line interface for dead-letter message management.

Commands:
- list: Display dead-lettered messages
- recover: Republish one message to the events topic
- recover-all: Republish up to --limit messages
- discard: Drop one message without republishing

The operator identity is taken from --operator (default: the login name)
and its roles from PIPELINE_OPERATOR_ROLES (comma-separated). Mutating
commands require the ``admin`` role.
"""

import argparse
import asyncio
import getpass
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from config.config import PipelineConfig, load_config
from core.errors.exceptions import AuthorizationError, NotFoundError
from core.logging import setup_logging
from warehouse_pipeline.audit.recorder import AuditRecorder
from warehouse_pipeline.common.auth import EnvelopeSigner, Principal
from warehouse_pipeline.common.dlq.store import KafkaDeadLetterStore
from warehouse_pipeline.common.producer import MessageProducer
from warehouse_pipeline.common.queue import EnvelopePublisher
from warehouse_pipeline.common.storage.delta import DeltaAuditSink
from warehouse_pipeline.dlq.recovery import DeadLetterRecoveryService

# cli.py is at src/warehouse_pipeline/dlq/cli.py, so root is 4 levels up
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent

logger = logging.getLogger(__name__)


def build_principal(operator: str | None) -> Principal:
    roles = os.getenv("PIPELINE_OPERATOR_ROLES", "")
    return Principal(
        subject=operator or getpass.getuser(),
        roles=frozenset(r.strip() for r in roles.split(",") if r.strip()),
    )


def print_messages(messages) -> None:
    if not messages:
        print("No dead-letter messages found.")
        return

    print(f"\n{'=' * 110}")
    print(f"Dead-letter messages ({len(messages)} total)")
    print(f"{'=' * 110}\n")
    print(f"{'Event ID':<40} {'Retries':<8} {'Category':<10} {'Failed At':<27} {'Reason':<25}")
    print(f"{'-' * 110}")
    for m in messages:
        reason = m.failure_reason if len(m.failure_reason) <= 25 else m.failure_reason[:22] + "..."
        print(
            f"{m.event_id:<40} {m.retry_count:<8} {m.error_category.value:<10} "
            f"{m.failed_at.isoformat():<27} {reason:<25}"
        )
    print(f"{'-' * 110}\n")


async def run_command(args: argparse.Namespace, config: PipelineConfig) -> int:
    producer = MessageProducer(config.queue, client_name="dlq-cli")
    await producer.start()
    try:
        signer = (
            EnvelopeSigner(config.worker.envelope_signing_key)
            if config.worker.envelope_signing_key
            else None
        )
        service = DeadLetterRecoveryService(
            store=KafkaDeadLetterStore(config.queue, producer),
            publisher=EnvelopePublisher(producer, config.queue.events_topic, signer),
            audit=AuditRecorder(DeltaAuditSink(config.warehouse)),
        )
        principal = build_principal(args.operator)

        if args.command == "list":
            print_messages(await service.list_messages(args.limit))
        elif args.command == "recover":
            result = await service.recover(args.event_id, principal)
            print(f"✓ Message {result.event_id} recovered")
        elif args.command == "recover-all":
            report = await service.recover_batch(principal, limit=args.limit)
            print(
                f"Processed {report.processed}: {report.succeeded} recovered, "
                f"{report.failed} failed"
            )
            for event_id, error in report.errors.items():
                print(f"  ✗ {event_id}: {error}")
            return 0 if report.failed == 0 else 1
        elif args.command == "discard":
            await service.discard(args.event_id, principal, reason=args.reason)
            print(f"✓ Message {args.event_id} discarded")
        return 0
    except NotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except AuthorizationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 3
    finally:
        await producer.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Dead-letter message management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List dead-lettered messages
  python -m warehouse_pipeline.dlq.cli list --limit 50

  # Recover one message
  PIPELINE_OPERATOR_ROLES=admin python -m warehouse_pipeline.dlq.cli recover evt-123

  # Recover everything (up to 100)
  PIPELINE_OPERATOR_ROLES=admin python -m warehouse_pipeline.dlq.cli recover-all

  # Discard a message that should never be processed
  PIPELINE_OPERATOR_ROLES=admin python -m warehouse_pipeline.dlq.cli discard evt-123 --reason "test data"
        """,
    )
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--operator", help="Operator name recorded in the audit log")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    list_parser = subparsers.add_parser("list", help="List dead-letter messages")
    list_parser.add_argument("--limit", type=int, default=100, help="Maximum messages to show")

    recover_parser = subparsers.add_parser("recover", help="Republish one message")
    recover_parser.add_argument("event_id", help="Event ID of the message to recover")

    recover_all_parser = subparsers.add_parser("recover-all", help="Republish many messages")
    recover_all_parser.add_argument("--limit", type=int, default=100, help="Maximum messages to recover")

    discard_parser = subparsers.add_parser("discard", help="Drop one message")
    discard_parser.add_argument("event_id", help="Event ID of the message to discard")
    discard_parser.add_argument("--reason", help="Why the message is discarded")

    return parser


def main() -> None:
    load_dotenv(PROJECT_ROOT / ".env")

    parser = build_parser()
    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(name="dlq_cli", level=getattr(logging, args.log_level.upper(), logging.WARNING))
    config = load_config(args.config)
    sys.exit(asyncio.run(run_command(args, config)))


if __name__ == "__main__":
    main()
