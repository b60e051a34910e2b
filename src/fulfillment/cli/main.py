"""CLI for the fulfillment orchestrator."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Awaitable, Callable, Optional, Sequence

from dotenv import load_dotenv

from fulfillment.core.completion import OpenAICompletionProvider
from fulfillment.core.config import AppConfig, load_app_config, load_service_templates
from fulfillment.db.pool import close_database, init_database
from fulfillment.db.store import PostgresStore, ensure_tables
from fulfillment.orchestrator.errors import OrderNotFound
from fulfillment.orchestrator.models import Agent, AgentType, OrderCategory
from fulfillment.orchestrator.service import Orchestrator


def setup_logging(level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_orchestrator(store: PostgresStore, app_config: AppConfig) -> Orchestrator:
    """Wire the orchestrator with the OpenAI provider and configured retries."""
    provider = OpenAICompletionProvider(
        api_key=app_config.openai_api_key,
        base_url=app_config.openai_base_url,
        max_tokens=app_config.completion_max_tokens,
    )
    return Orchestrator(store, provider, retry_policy=app_config.retry_policy())


def _run(handler: Callable[[PostgresStore, AppConfig], Awaitable[int]]) -> int:
    """Load config, connect to PostgreSQL, run one async handler."""
    load_dotenv()
    app_config = load_app_config()
    setup_logging(app_config.log_level)

    async def runner() -> int:
        db = await init_database()
        try:
            return await handler(PostgresStore(db), app_config)
        finally:
            await close_database()

    return asyncio.run(runner())


def cmd_init_db(args) -> int:
    """Init-db command handler."""
    async def handler(store: PostgresStore, app_config: AppConfig) -> int:
        await ensure_tables(store.db)
        print("Tables ready.")
        return 0

    return _run(handler)


def cmd_seed_templates(args) -> int:
    """Seed-templates command handler."""
    async def handler(store: PostgresStore, app_config: AppConfig) -> int:
        path = args.path or app_config.service_templates_path
        if not path:
            print("No templates file given and SERVICE_TEMPLATES_PATH is not set", file=sys.stderr)
            return 1

        templates = load_service_templates(path)
        for category, instructions in templates.items():
            await store.upsert_service_template(category, instructions)
        print(f"Seeded {len(templates)} service templates from {path}")
        return 0

    return _run(handler)


def cmd_add_agent(args) -> int:
    """Add-agent command handler."""
    async def handler(store: PostgresStore, app_config: AppConfig) -> int:
        agent = Agent(
            id=args.id,
            name=args.name or args.id,
            type=AgentType(args.type),
            max_load=args.max_load,
            model=args.model,
            system_prompt=args.system_prompt,
            client_id=args.client,
        )
        await store.create_agent(agent)
        print(f"Agent {agent.id} ({agent.type.value}, max load {agent.max_load}) registered")
        return 0

    return _run(handler)


def cmd_submit(args) -> int:
    """Submit command handler."""
    try:
        requirements = json.loads(args.requirements)
    except json.JSONDecodeError as e:
        print(f"Invalid requirements JSON: {e}", file=sys.stderr)
        return 1

    async def handler(store: PostgresStore, app_config: AppConfig) -> int:
        orchestrator = build_orchestrator(store, app_config)
        order = await orchestrator.submit_order(
            client_id=args.client,
            category=args.category,
            requirements=requirements,
            priority=args.priority,
        )
        print(f"Order {order.id} submitted (number {order.order_number})")
        return 0

    return _run(handler)


def cmd_process(args) -> int:
    """Process command handler."""
    async def handler(store: PostgresStore, app_config: AppConfig) -> int:
        orchestrator = build_orchestrator(store, app_config)
        try:
            result = await orchestrator.process_order(args.order_id)
        except OrderNotFound as e:
            print(str(e), file=sys.stderr)
            return 1

        print(f"\nOrder {result.order_id}: {result.status.value}")
        if result.agent_id:
            print(f"  Agent: {result.agent_id}")
        print(f"  Tasks: {len(result.tasks)}")
        if result.delivery:
            print(f"  Delivery: {result.delivery.id} ({result.delivery.type.value})")
        if result.error:
            print(f"  Error: {result.error}")
        return 0 if result.success else 1

    return _run(handler)


def cmd_status(args) -> int:
    """Status command handler."""
    async def handler(store: PostgresStore, app_config: AppConfig) -> int:
        orchestrator = build_orchestrator(store, app_config)
        try:
            details = await orchestrator.get_order_details(args.order_id)
        except OrderNotFound as e:
            print(str(e), file=sys.stderr)
            return 1

        print(json.dumps(details, indent=2, ensure_ascii=False, default=str))
        return 0

    return _run(handler)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Fulfillment orchestrator - AI agents working client orders"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Init-db command
    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    # Seed-templates command
    seed_parser = subparsers.add_parser(
        "seed-templates", help="Load service instructions from a YAML file"
    )
    seed_parser.add_argument(
        "path",
        nargs="?",
        default=None,
        help="YAML file (default: SERVICE_TEMPLATES_PATH)",
    )
    seed_parser.set_defaults(func=cmd_seed_templates)

    # Add-agent command
    agent_parser = subparsers.add_parser("add-agent", help="Register an agent")
    agent_parser.add_argument("--id", required=True, help="Agent ID")
    agent_parser.add_argument(
        "--type", "-t",
        required=True,
        choices=[t.value for t in AgentType],
        help="Agent type",
    )
    agent_parser.add_argument("--name", help="Display name (default: the ID)")
    agent_parser.add_argument(
        "--max-load",
        type=int,
        default=1,
        help="Maximum concurrent orders",
    )
    agent_parser.add_argument("--model", default="", help="Completion model")
    agent_parser.add_argument("--system-prompt", default="", help="System prompt")
    agent_parser.add_argument("--client", help="Dedicate the agent to this client")
    agent_parser.set_defaults(func=cmd_add_agent)

    # Submit command
    submit_parser = subparsers.add_parser("submit", help="Submit a new order")
    submit_parser.add_argument("--client", "-c", required=True, help="Client ID")
    submit_parser.add_argument(
        "--category",
        required=True,
        choices=[c.value for c in OrderCategory],
        help="Service category",
    )
    submit_parser.add_argument(
        "--requirements", "-r",
        required=True,
        help="Requirements as a JSON object",
    )
    submit_parser.add_argument(
        "--priority", "-p",
        type=int,
        default=5,
        help="Order priority",
    )
    submit_parser.set_defaults(func=cmd_submit)

    # Process command
    process_parser = subparsers.add_parser("process", help="Process an order to completion")
    process_parser.add_argument("order_id", help="Order ID")
    process_parser.set_defaults(func=cmd_process)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show order details as JSON")
    status_parser.add_argument("order_id", help="Order ID")
    status_parser.set_defaults(func=cmd_status)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
