#!/usr/bin/env python3
"""
Maintenance Script for Adaptive Chat Data

Runs retention and inactivity sweeps over the stored behavior and session
snapshots, and exports or erases a single user's data, against the Redis
key-value store configured in the environment.
"""

import os
import sys
import json
import asyncio
import logging
import argparse
from typing import Any, Dict, Optional

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from adaptive_chat.behavior_tracker import BehaviorTracker
from adaptive_chat.config import settings
from adaptive_chat.exceptions import StoreError
from adaptive_chat.session_manager import SessionManager
from adaptive_chat.storage import RedisKeyValueStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class MaintenanceManager:
    """Offline maintenance over the stored behavior and session snapshots"""

    def __init__(self, redis_url: Optional[str] = None, key_prefix: Optional[str] = None):
        self.store = RedisKeyValueStore(redis_url or settings.REDIS_URL, key_prefix)
        self.tracker = BehaviorTracker(store=self.store)
        self.sessions = SessionManager(store=self.store, tracker=self.tracker)

    async def load(self) -> None:
        await self.tracker.load_snapshot()
        await self.sessions.load_snapshot()

    async def sweep(self) -> Dict[str, int]:
        """Apply retention to behavior data and end idle sessions"""
        await self.load()
        removed_users = await self.tracker.cleanup_old_data()
        ended_sessions = await self.sessions.cleanup_inactive_sessions()
        await self.sessions.save_snapshot()

        logger.info(f"Retention removed {removed_users} users; ended {ended_sessions} idle sessions")
        return {"removed_users": removed_users, "ended_sessions": ended_sessions}

    async def export_user(self, user_id: str) -> Dict[str, Any]:
        await self.load()
        return {
            "user_id": user_id,
            "behavior": self.tracker.export_user_data(user_id),
            "sessions": self.sessions.export_session_data(user_id),
        }

    async def delete_user(self, user_id: str) -> bool:
        await self.load()
        had_behavior = await self.tracker.delete_user_data(user_id)
        had_sessions = await self.sessions.delete_user_sessions(user_id)
        logger.info(f"Deleted data for {user_id} (behavior: {had_behavior}, sessions: {had_sessions})")
        return had_behavior or had_sessions

    async def close(self) -> None:
        await self.store.disconnect()


async def run(args: argparse.Namespace) -> int:
    maintenance = MaintenanceManager(args.redis_url, args.key_prefix)
    try:
        if args.operation == 'sweep':
            result = await maintenance.sweep()
            print(json.dumps(result, indent=2))

        elif args.operation == 'export-user':
            exported = await maintenance.export_user(args.user_id)
            output = json.dumps(exported, indent=2)
            if args.output:
                with open(args.output, 'w') as f:
                    f.write(output)
                logger.info(f"Export written to: {args.output}")
            else:
                print(output)

        elif args.operation == 'delete-user':
            if not await maintenance.delete_user(args.user_id):
                logger.warning(f"No stored data found for {args.user_id}")
                return 1
    finally:
        await maintenance.close()

    return 0


def main():
    """Main maintenance function"""
    parser = argparse.ArgumentParser(
        description="Maintenance operations for adaptive chat data"
    )
    parser.add_argument(
        '--redis-url',
        help='Redis URL (defaults to REDIS_URL)'
    )
    parser.add_argument(
        '--key-prefix',
        help='Key prefix (defaults to STORE_KEY_PREFIX)'
    )

    subparsers = parser.add_subparsers(dest='operation', required=True)
    subparsers.add_parser('sweep', help='Run retention and inactivity sweeps')

    export_parser = subparsers.add_parser('export-user', help="Export a user's stored data")
    export_parser.add_argument('user_id')
    export_parser.add_argument('--output', help='Write the export to this file')

    delete_parser = subparsers.add_parser('delete-user', help="Erase a user's stored data")
    delete_parser.add_argument('user_id')

    args = parser.parse_args()
    logger.info(f"Starting maintenance operation: {args.operation}")

    try:
        exit_code = asyncio.run(run(args))
    except StoreError as e:
        logger.error(f"Maintenance operation failed: {e}")
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
