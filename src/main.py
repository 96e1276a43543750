"""
Main entry point for addonsync.

This module wires the database, account plugin, sync dispatcher and input
plugins together and runs them until shutdown.
"""

import asyncio
import logging
import signal
from typing import List, Optional, Set

from config import get_config
from db import DatabaseManager
from dispatcher import SyncDispatcher
from events import StatusBus
from plugins.accounts.base import AccountPlugin
from plugins.base import ChangeEvent, ChangeKind
from plugins.inputs.base import InputPlugin
from plugins.registry import get_registry, register_builtin_plugins
from protection import BUILTIN_PROTECTED_IDS, ProtectionPolicy
from repository import AddonSetKind, DatabaseAddonSetRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the dispatcher and plugins."""

    def __init__(self):
        self.config = get_config()
        self.db: Optional[DatabaseManager] = None
        self.account: Optional[AccountPlugin] = None
        self.dispatcher: Optional[SyncDispatcher] = None
        self.bus: Optional[StatusBus] = None
        self.input_plugins: List[InputPlugin] = []
        self.running = False
        self._stopped = False
        self._background: Set[asyncio.Task] = set()

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing addonsync")

        register_builtin_plugins()
        registry = get_registry()

        # Initialize database
        db_config = self.config.database
        self.db = DatabaseManager(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
        )
        await self.db.connect()
        await self.db.initialize_schema()
        logger.info("Database initialized")

        # Account plugin config from env, overridable through PLUGIN_CONFIGS
        account_name = self.config.plugins.account_plugin
        account_config = registry.get_account_plugin_config(account_name)
        account_config.update(self.config.plugins.get_plugin_config(account_name))
        self.account = await registry.get_account_plugin(account_name, account_config)

        sync_config = self.config.sync
        policy = ProtectionPolicy(
            builtin_ids=BUILTIN_PROTECTED_IDS + tuple(sync_config.extra_protected_ids)
        )
        if sync_config.extra_protected_ids:
            logger.info(
                f"Extra protected addon ids: {', '.join(sync_config.extra_protected_ids)}"
            )

        self.bus = StatusBus()
        self.dispatcher = SyncDispatcher(
            db=self.db,
            account=self.account,
            exclusions=DatabaseAddonSetRepository(self.db, AddonSetKind.EXCLUDED),
            protections=DatabaseAddonSetRepository(self.db, AddonSetKind.PROTECTED),
            bus=self.bus,
            config=sync_config,
            policy=policy,
        )
        logger.info(f"Sync dispatcher ready (mode={sync_config.safety_mode.value})")

        # Determine which input plugins to load
        enabled_inputs = self.config.plugins.enabled_input_plugins
        if not enabled_inputs:
            enabled_inputs = registry.list_input_plugins()

        for plugin_name in enabled_inputs:
            if not registry.has_input_plugin(plugin_name):
                logger.warning(f"Input plugin '{plugin_name}' not found, skipping")
                continue

            plugin_config = registry.get_input_plugin_config(plugin_name)
            plugin_config.update(self.config.plugins.get_plugin_config(plugin_name))

            plugin = await registry.get_input_plugin(plugin_name, plugin_config)
            plugin.set_db_manager(self.db)
            plugin.set_dispatcher(self.dispatcher)
            self.input_plugins.append(plugin)
            logger.info(f"Initialized input plugin: {plugin_name}")

        logger.info("All components initialized")

    async def on_change(self, event: ChangeEvent) -> None:
        """Invalidate and re-check users affected by a configuration change."""
        if event.kind == ChangeKind.GROUP_UPDATED and event.group_id is not None:
            user_ids = await self.db.get_group_user_ids(event.group_id)
        elif event.kind in (ChangeKind.USER_UPDATED, ChangeKind.USER_DELETED):
            user_ids = [event.user_id] if event.user_id is not None else []
        else:
            return

        for user_id in user_ids:
            await self.dispatcher.invalidate_status(user_id)

        if event.kind == ChangeKind.USER_DELETED or not user_ids:
            return

        logger.debug(f"Re-checking {len(user_ids)} users after {event.kind.value}")
        task = asyncio.create_task(self.dispatcher.refresh_users(user_ids))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def start(self):
        """Start the application."""
        if not self.dispatcher:
            await self.initialize()

        self.running = True
        logger.info("Starting addonsync")

        tasks = [asyncio.create_task(self.dispatcher.start())]
        for plugin in self.input_plugins:
            tasks.append(asyncio.create_task(plugin.start(self.on_change)))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping addonsync")
        self.running = False

        if self.dispatcher:
            await self.dispatcher.stop()

        for plugin in self.input_plugins:
            await plugin.stop()

        await get_registry().close()

        if self.db:
            await self.db.close()

        logger.info("addonsync stopped")


async def main():
    """Main entry point."""
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
