from datetime import timedelta

import questionary

from lockward.cli.builders.store import create_store
from lockward.server.config import (
    CONFIG_VERSION,
    ConfigFile,
    LockConfig,
    LockOptions,
)


async def start_configfile_creation_wizard() -> tuple[str, ConfigFile]:
    # ask for the name of the lock
    lock_name = await questionary.text(
        "What is the name of the lock?",
        default="main",
    ).ask_async()
    if not lock_name:
        raise ValueError("Invalid lock name")

    # ask where the lock markers live
    store_name, store_config, strategy = await create_store("Where should the locks be stored?")

    ttl_minutes = await questionary.text(
        "After how many minutes is a lock considered stale? (empty to never expire)",
        default="",
    ).ask_async()

    reclaim = False
    if ttl_minutes:
        reclaim = await questionary.confirm(
            "Should stale locks be taken over automatically?",
            default=False,
        ).ask_async()

    options = LockOptions(
        strategy=strategy,
        ttl=timedelta(minutes=int(ttl_minutes)) if ttl_minutes else None,
        stale_policy="reclaim" if reclaim else "report",
    )

    result_file = ConfigFile(
        version=CONFIG_VERSION,
        stores={
            store_name: store_config,
        },
        locks={
            lock_name: LockConfig(store=store_name, options=options),
        },
    )

    return lock_name, result_file
