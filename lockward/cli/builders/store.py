import pathlib
from typing import Literal, Optional

import questionary

from lockward.plugins.local_object_store.local_object_store import LocalObjectStoreInitConfig
from lockward.plugins.s3_object_store.s3_object_store import S3ObjectStoreInitConfig
from lockward.plugins.sqlite_ledger_store.sqlite_ledger_store import SqliteLedgerStoreInitConfig
from lockward.server.config import StoreConfig

StrategyName = Literal["object_conditional", "ledger"]


async def build_local_store(default_path: Optional[str] = None) -> StoreConfig:
    folder = pathlib.Path(
        await questionary.path(
            "Where is the locks folder located?",
            default=default_path or "",
        ).ask_async()
    )

    return StoreConfig(
        type="local",
        **LocalObjectStoreInitConfig(folder=folder).model_dump(mode="json"),
    )


async def build_s3_store() -> StoreConfig:
    bucket = await questionary.text("What is the name of the bucket?").ask_async()
    if not bucket:
        raise ValueError("Invalid bucket name")

    region_name = await questionary.text("What is the region of the bucket? (empty for default)").ask_async()

    return StoreConfig(
        type="s3",
        **S3ObjectStoreInitConfig(bucket=bucket, region_name=region_name or None).model_dump(
            mode="json", exclude_none=True
        ),
    )


async def build_sqlite_store() -> StoreConfig:
    path = await questionary.path(
        "Where should the ledger database be stored? (empty for the lockward data folder)",
    ).ask_async()

    return StoreConfig(
        type="sqlite",
        **SqliteLedgerStoreInitConfig(path=pathlib.Path(path) if path else None).model_dump(
            mode="json", exclude_none=True
        ),
    )


async def create_store(main_question: str) -> tuple[str, StoreConfig, StrategyName]:
    answer = await questionary.select(
        main_question,
        choices=["Local", "S3", "SQLite"],
    ).ask_async()

    match answer:
        case "Local":
            return "local", await build_local_store("~/.lockward/locks"), "object_conditional"

        case "S3":
            return "s3", await build_s3_store(), "object_conditional"

        case "SQLite":
            return "sqlite", await build_sqlite_store(), "ledger"

        case _:
            raise ValueError("Invalid selection")
