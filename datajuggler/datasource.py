"""
DataSource - binds a connector to the models defined against it.

Provides:
- Connector setup from a registered name, a connector class or an instance
- Lazy connection: every DAO call awaits ``ready()``, which connects once
  and fails queued callers with ``ConnectionTimeoutFault`` after
  ``connection_timeout`` seconds
- Model definition (``define`` / ``create_model``) and ``attach``
- Schema helpers (``automigrate`` / ``autoupdate``) and transactions
- Lifecycle hooks ``on_startup`` / ``on_shutdown``

Usage:
    ```python
    ds = DataSource("memory", file="db.json", connection_timeout=2.0)

    class Book(ds.Model):
        title = Property(str, required=True)

    Author = ds.define("Author", {"name": {"type": "string"}})

    async with ds:
        await Book.create({"title": "Dune"})
    ```
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Dict, Iterable, List, Optional, Type, Union

from .connectors import Connector, get_connector
from .faults import ConnectionTimeoutFault, ConnectorFault, ModelDefinitionFault, NotSupportedFault
from .metaclass import ModelMeta
from .model import BaseModel
from .registry import ModelRegistry

logger = logging.getLogger("datajuggler.datasource")

__all__ = ["DataSource"]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class DataSource:
    """
    A configured connector plus the models attached to it.

    ``connector`` is a registered connector name (``"memory"``,
    ``"kv-memory"``, ``"transient"``), a ``Connector`` subclass or a ready
    made connector object. Remaining keyword arguments are the connector
    settings.
    """

    def __init__(
        self,
        connector: Union[str, Type[Connector], Any] = "memory",
        *,
        name: Optional[str] = None,
        connection_timeout: Optional[float] = 5.0,
        **settings: Any,
    ):
        if isinstance(connector, str):
            connector = get_connector(connector)(settings)
        elif isinstance(connector, type) and issubclass(connector, Connector):
            connector = connector(settings)
        self.connector = connector
        self.connector.data_source = self
        self.name = name or getattr(connector, "name", None) or type(connector).__name__
        self.settings: Dict[str, Any] = settings
        self.connection_timeout = connection_timeout
        self.models: Dict[str, Type[BaseModel]] = {}
        self.connected = False
        self._lock = asyncio.Lock()
        self._connect_task: Optional[asyncio.Task] = None
        self._model_base: Optional[Type[BaseModel]] = None

    @classmethod
    def from_config(cls, config: Any, name: str = "default") -> DataSource:
        """
        Build the data source described by ``datasources.<name>``.

        ``config`` is a ``DataSourceConfig`` or a plain dict of that
        section.
        """
        section = config.datasource(name) if hasattr(config, "datasource") else dict(config or {})
        section = dict(section)
        connector = section.pop("connector", "memory")
        timeout = section.pop("connection_timeout", 5.0)
        return cls(connector, name=section.pop("name", name), connection_timeout=timeout, **section)

    # ── Lifecycle hooks ──────────────────────────────────────────────────

    async def on_startup(self) -> None:
        """Lifecycle hook, connects eagerly."""
        await self.connect()

    async def on_shutdown(self) -> None:
        """Lifecycle hook, closes the connector."""
        await self.disconnect()

    async def __aenter__(self) -> DataSource:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # ── Connection management ────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the connector connection once."""
        if self.connected:
            return

        async with self._lock:
            if self.connected:
                return
            await _maybe_await(self.connector.connect())
            self.connected = True
            logger.info(f"DataSource {self.name} connected")

    async def ready(self) -> None:
        """
        Wait until the connector is connected.

        Concurrent callers share one connection attempt. When
        ``connection_timeout`` elapses first, every waiting caller fails with
        ``ConnectionTimeoutFault``; the attempt itself keeps running.
        """
        if self.connected:
            return
        task = self._connect_task
        if task is None or (task.done() and not self.connected):
            task = asyncio.get_running_loop().create_task(self.connect())
            self._connect_task = task

        if not self.connection_timeout:
            await asyncio.shield(task)
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), self.connection_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"DataSource {self.name} not connected after {self.connection_timeout}s")
            raise ConnectionTimeoutFault(self.name, self.connection_timeout) from None

    async def disconnect(self) -> None:
        """Close the connector connection."""
        if not self.connected:
            return
        async with self._lock:
            if not self.connected:
                return
            try:
                await _maybe_await(self.connector.disconnect())
            except Exception as exc:
                raise ConnectorFault(
                    "DISCONNECT_FAILED",
                    f"DataSource {self.name} disconnect failed: {exc}",
                ) from exc
            finally:
                self.connected = False
                self._connect_task = None
            logger.info(f"DataSource {self.name} disconnected")

    # ── Models ───────────────────────────────────────────────────────────

    @property
    def Model(self) -> Type[BaseModel]:
        """Abstract base class whose subclasses attach to this data source."""
        if self._model_base is None:
            dao_base = getattr(self.connector, "data_access_object", None)
            if not (isinstance(dao_base, type) and issubclass(dao_base, BaseModel)):
                from .dao import PersistedModel

                dao_base = PersistedModel
            self._model_base = ModelMeta(
                "Model",
                (dao_base,),
                {"_data_source": self, "__module__": __name__},
                settings={"abstract": True},
            )
        return self._model_base

    def define(
        self,
        name: str,
        properties: Optional[Dict[str, Any]] = None,
        settings: Optional[Dict[str, Any]] = None,
        base: Optional[Type[BaseModel]] = None,
    ) -> Type[BaseModel]:
        """
        Define model ``name`` on this data source.

        ``base`` is another model class to extend; it defaults to
        ``self.Model``. A model extending a class attached elsewhere is
        re-attached here.
        """
        if base is None:
            base = self.Model
        elif isinstance(base, str):
            base = ModelRegistry.resolve(base)
        return ModelMeta(
            name,
            (base,),
            {"_data_source": self, "__module__": __name__},
            properties=properties or {},
            settings=settings,
        )

    create_model = define

    def attach(self, model_cls: Type[BaseModel]) -> Type[BaseModel]:
        """Bind ``model_cls`` to this data source and hand it to the connector."""
        if self.models.get(model_cls.__name__) is model_cls:
            return model_cls
        model_cls._data_source = self
        define = getattr(self.connector, "define", None)
        if define is not None:
            define(model_cls)
        self.models[model_cls.__name__] = model_cls
        logger.debug(f"Model {model_cls.__name__} attached to {self.name}")
        return model_cls

    def get_model(self, name: str) -> Type[BaseModel]:
        try:
            return self.models[name]
        except KeyError:
            raise ModelDefinitionFault(
                f"Model {name!r} is not attached to data source {self.name!r}",
                model=name,
            ) from None

    def id_name(self, model: str) -> Optional[str]:
        return self.get_model(model).get_id_name()

    def id_names(self, model: str) -> List[str]:
        return list(self.get_model(model)._definition.id_names)

    # ── Schema ───────────────────────────────────────────────────────────

    def _model_names(self, models: Any) -> Optional[List[str]]:
        if models is None:
            return None
        if isinstance(models, (str, type)):
            models = [models]
        names = [m if isinstance(m, str) else m.__name__ for m in models]
        unknown = [n for n in names if n not in self.models]
        if unknown:
            raise ModelDefinitionFault(
                f"Cannot migrate models not attached to this datasource: {' '.join(unknown)}",
                models=unknown,
            )
        return names

    async def automigrate(self, models: Union[None, str, type, Iterable[Any]] = None) -> None:
        """Drop and recreate the storage of ``models`` (all attached models by default)."""
        await self._schema_call("automigrate", models)

    async def autoupdate(self, models: Union[None, str, type, Iterable[Any]] = None) -> None:
        """Bring the storage of ``models`` up to date without dropping data."""
        await self._schema_call("autoupdate", models)

    async def _schema_call(self, method: str, models: Any) -> None:
        names = self._model_names(models)
        fn = getattr(self.connector, method, None)
        if fn is None:
            raise NotSupportedFault(f"Connector {self.name} does not support {method}", method=method)
        await self.ready()
        logger.debug(f"{self.name}.{method} {names or list(self.models)}")
        await _maybe_await(fn(names))

    # ── Transactions ─────────────────────────────────────────────────────

    async def begin_transaction(self, isolation_level: Any = None, timeout: Optional[float] = None) -> Any:
        from .transaction import Transaction

        await self.ready()
        return await Transaction.begin(self.connector, isolation_level, timeout=timeout)

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return f"<DataSource {self.name} {state} models={list(self.models)}>"
