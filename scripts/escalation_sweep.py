#!/usr/bin/env python3
"""
Script to escalate support tickets whose time limits have passed.

Updates trigger the escalation check on their own; this sweep catches
tickets nobody touched. Run it periodically (e.g. from cron) against the
shared store backend.
"""

import asyncio
import sys
from pathlib import Path

# Add the project root to the path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from agentchat.agents.routing_agent import routing_agent
from agentchat.services.store import data_store
from config.logging_config import configure_logging
from config.settings import settings


def print_status(message):
    """Print status message"""
    print(f"✅ {message}")


def print_error(message):
    """Print error message"""
    print(f"❌ {message}")


def print_info(message):
    """Print info message"""
    print(f"ℹ️  {message}")


async def main():
    """Main function"""
    configure_logging()
    print_info(f"Sweeping tickets in the {settings.STORE_BACKEND} store")

    if not await data_store.initialize():
        print_error("Store backend is not reachable")
        sys.exit(1)

    try:
        escalations = await routing_agent.sweep_escalations()
    finally:
        await data_store.close()

    for record in escalations:
        print_info(f"{record.ticket_id}: {record.reason}")
    print_status(f"Escalated {len(escalations)} tickets")


if __name__ == "__main__":
    asyncio.run(main())
