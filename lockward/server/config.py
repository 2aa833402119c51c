import pathlib
from datetime import timedelta
from typing import (
    Annotated,
    Literal,
    Optional,
)

import semver
import xdg_base_dirs
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
)

from lockward.server.backoff import BackoffPolicy

PACKAGE_NAME = "lockward"

CONFIG_VERSION = "1"

CONFIG_FILE_NAME = "lockward.yaml"


class StoreConfig(BaseModel):
    """Data struct that contains the configuration for a store backend.

    Each store defines it's own unique configuration parameters -
    and the parameters will be passed through to the store.

    Attributes:
        type: store type as declared in the entrypoint.
        **kwargs: store specific configuration parameters.

    Example:
        In this example, the `local` store has a `folder` parameter that is required.
        The store will get a dict: `{"folder": "/path/to/folder"}` as the configuration.

        ```yaml
        type: local
        folder: /path/to/folder
        ```
    """

    model_config = ConfigDict(extra="allow")
    type: str


class LockOptions(BaseModel):
    """How a lock is acquired and when it is considered stale.

    Attributes:
        strategy: `object_conditional` for object stores, `ledger` for ledger stores.
        ttl: Age after which a lock is considered stale - `None` means locks never go stale.
        max_attempts: Maximum number of acquire attempts.
        max_elapsed: Maximum time spent acquiring.
        backoff_base: Delay before the second attempt.
        backoff_factor: Growth factor of the delay between attempts.
        backoff_cap: Upper bound of a single delay.
        jitter: Fraction of every delay that is randomized away.
        stale_policy: `report` to fail on stale locks, `reclaim` to take them over.
        key_prefix: Prefix of marker object keys (object_conditional only).
    """

    model_config = ConfigDict(frozen=True)

    strategy: Literal["object_conditional", "ledger"] = "object_conditional"
    ttl: Optional[timedelta] = None
    max_attempts: Optional[int] = Field(default=10, ge=1)
    max_elapsed: Optional[timedelta] = None
    backoff_base: timedelta = timedelta(seconds=1)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    backoff_cap: timedelta = timedelta(seconds=30)
    jitter: float = Field(default=0.5, ge=0.0, le=1.0)
    stale_policy: Literal["report", "reclaim"] = "report"
    key_prefix: str = "locks/"

    @model_validator(mode="after")
    def validate_budget(self) -> "LockOptions":
        if self.max_attempts is None and self.max_elapsed is None:
            raise ValueError("Either max_attempts or max_elapsed must be set - waiting forever is not supported")

        return self

    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            base=self.backoff_base,
            factor=self.backoff_factor,
            cap=self.backoff_cap,
            jitter=self.jitter,
            max_attempts=self.max_attempts,
            max_elapsed=self.max_elapsed,
        )


class LockConfig(BaseModel):
    """Configuration for a single named lock.

    Attributes:
        store: store name defined in `stores` section of the config file.
        identity: The identity of the protected resource - defaults to the lock name.
        options: The acquire options of the lock.

    Example:
        ```yaml
        store: main
        identity: prod/terraform.tfstate
        options:
            strategy: object_conditional
            ttl: 600
            max_attempts: 5
        ```
    """

    store: str
    identity: Optional[str] = None
    options: LockOptions = LockOptions()


class ConfigFile(BaseModel):
    """The configuration file for lockward.

    Attributes:
        version: The version of the configuration file.
        stores: The configuration for the store backends.
        locks: The configuration for the locks.
    """

    version: str = CONFIG_VERSION
    stores: dict[str, StoreConfig]
    locks: dict[str, LockConfig]

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: str) -> str:
        current_version = semver.Version.parse(value, optional_minor_and_patch=True)
        config_version = semver.Version.parse(CONFIG_VERSION, optional_minor_and_patch=True)
        if current_version < config_version:
            raise ValueError(
                f"Unsupported version ({current_version} < {config_version}) - please upgrade the config file"
            )

        if current_version > config_version:
            raise ValueError(
                f"Unsupported version ({current_version} > {config_version}) - please check if there is a newer version of {PACKAGE_NAME}"
            )

        return value


def load_config(path: pathlib.Path) -> ConfigFile:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    obj = yaml.safe_load(path.read_bytes())
    return ConfigFile.model_validate(obj)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOCKWARD_")

    state_dir: Annotated[
        pathlib.Path,
        Field(
            default=xdg_base_dirs.xdg_data_home() / PACKAGE_NAME,
        ),
    ]
    config_file: Annotated[pathlib.Path, Field(default=pathlib.Path(CONFIG_FILE_NAME))]
    log_level: str = "WARNING"
