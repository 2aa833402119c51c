import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, AsyncIterator, Literal, Optional

import uvicorn
from fastapi import Body, Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from lockward.server.config import ConfigFile, LockOptions, Settings, load_config
from lockward.server.coordinator import LockCoordinator, LockTarget
from lockward.server.lock_base import (
    AlreadyLocked,
    InvalidIdentity,
    LockLost,
    LockNotFound,
    LockStatus,
    LockStrategyProtocol,
    TransientLockError,
)
from lockward.server.lock_broker import LockBroker, LockInfo, LockNotHeld, UndeclaredLock
from lockward.server.store_base import (
    STORE_PROVIDERS_ENTRYPOINT,
    LedgerStoreProtocol,
    ObjectStoreProtocol,
    StoreProtocol,
)
from lockward.server.strategies.ledger import LedgerLock
from lockward.server.strategies.object_conditional import ObjectConditionalLock
from lockward.utils.plugins import get_provider

logger = logging.getLogger(__name__)

config = Settings()  # type: ignore


async def create_stores(config: ConfigFile, workdir: Path) -> dict[str, StoreProtocol]:
    result_stores: dict[str, StoreProtocol] = {}
    for name, store_config in config.stores.items():
        store_class = get_provider(StoreProtocol, STORE_PROVIDERS_ENTRYPOINT, store_config.type).model_class
        result_stores[name] = await store_class.from_config(
            store_config.model_extra or {},
            workdir=workdir,
        )

    return result_stores


def build_strategy(store_name: str, store: StoreProtocol, options: LockOptions) -> LockStrategyProtocol:
    match options.strategy:
        case "object_conditional":
            if not isinstance(store, ObjectStoreProtocol):
                raise ValueError(f"Store {store_name} does not support conditional writes - required by object_conditional")

            return ObjectConditionalLock(store, key_prefix=options.key_prefix, stale_policy=options.stale_policy)

        case "ledger":
            if not isinstance(store, LedgerStoreProtocol):
                raise ValueError(f"Store {store_name} is not a ledger store - required by ledger")

            return LedgerLock(store, stale_policy=options.stale_policy)

        case _:
            raise ValueError(f"Unsupported lock strategy: {options.strategy}")


def generate_locks(config: ConfigFile, stores: dict[str, StoreProtocol]) -> dict[str, LockTarget]:
    result: dict[str, LockTarget] = {}

    for lock_name, lock in config.locks.items():
        store = stores.get(lock.store)
        if store is None:
            raise ValueError(f"Undeclared store: {lock.store}")

        strategy = build_strategy(lock.store, store, lock.options)
        result[lock_name] = LockTarget(
            name=lock_name,
            identity=lock.identity or lock_name,
            coordinator=LockCoordinator(strategy, lock.options),
        )

    return result


async def initialize_locks(config_file_location: Optional[Path] = None) -> dict[str, LockTarget]:
    file_config = load_config(config_file_location or config.config_file)
    stores = await create_stores(file_config, workdir=config.state_dir)
    return generate_locks(file_config, stores)


def get_broker(request: Request) -> LockBroker:
    return request.app.state.broker


BrokerDependency = Annotated[LockBroker, Depends(get_broker)]


def create_app(
    locks: Optional[dict[str, LockTarget]] = None,
    config_file: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        targets = locks if locks is not None else await initialize_locks(config_file)
        app.state.broker = LockBroker(targets=targets)
        yield

    app = FastAPI(lifespan=lifespan)

    @app.exception_handler(AlreadyLocked)
    async def already_locked_handler(_: Request, exc: AlreadyLocked) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_423_LOCKED,
            content=jsonable_encoder(LockInfo.from_record(exc.holder)),
        )

    @app.exception_handler(LockLost)
    @app.exception_handler(LockNotHeld)
    async def conflict_handler(_: Request, exc: LockLost | LockNotHeld) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=jsonable_encoder({"detail": str(exc), "identity": exc.identity}),
        )

    @app.exception_handler(LockNotFound)
    async def not_found_handler(_: Request, exc: LockNotFound) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=jsonable_encoder({"detail": str(exc), "identity": exc.identity}),
        )

    @app.exception_handler(TransientLockError)
    async def transient_handler(_: Request, exc: TransientLockError) -> JSONResponse:
        logger.warning("Backend failure: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=jsonable_encoder({"detail": str(exc), "identity": exc.identity}),
        )

    @app.exception_handler(InvalidIdentity)
    async def invalid_identity_handler(_: Request, exc: InvalidIdentity) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonable_encoder({"detail": str(exc), "identity": exc.identity}),
        )

    @app.exception_handler(UndeclaredLock)
    async def undeclared_lock_handler(_: Request, exc: UndeclaredLock) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=jsonable_encoder({"detail": str(exc)}),
        )

    @app.put("/{lock_name}/lock")
    async def lock(lock_name: str, body: LockInfo, broker: BrokerDependency) -> None:
        await broker.lock(lock_name, body)

    @app.delete("/{lock_name}/lock")
    async def unlock(
        lock_name: str,
        broker: BrokerDependency,
        body: Annotated[Optional[LockInfo], Body()] = None,
    ) -> None:
        await broker.unlock(lock_name, body)

    @app.get("/{lock_name}/lock")
    async def lock_status(lock_name: str, broker: BrokerDependency) -> LockStatus:
        return await broker.status(lock_name)

    @app.delete("/{lock_name}/lock/force")
    async def force_unlock(lock_name: str, broker: BrokerDependency) -> None:
        await broker.force_unlock(lock_name)

    @app.get("/ready")
    def ready() -> Literal["Ready"]:
        return "Ready"

    return app


app = create_app()


def start_server(port: int, config_file: Optional[Path] = None) -> None:
    uvicorn.run(create_app(config_file=config_file), port=port)


if __name__ == "__main__":
    start_server(port=8600)
