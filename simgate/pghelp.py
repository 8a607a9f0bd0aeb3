import inspect
import logging
import os
from typing import Any, Awaitable, Callable, Optional, Union

import asyncpg

LOG_LIMIT = int(os.getenv("PG_LOG_LIMIT", "256"))
QUERY_TIMEOUT = 60

pools: list[asyncpg.Pool] = []


async def close_pools() -> None:
    while pools:
        pool = pools.pop()
        try:
            await pool.close()
        except (asyncpg.PostgresError, asyncpg.InternalClientError) as e:
            logging.error("closing pool: %s", e)


def shorten(thing: Any, limit: int = LOG_LIMIT) -> str:
    text = str(thing)
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...[{len(text) - limit} more]"


class PGExpressions(dict):
    """Named SQL statements for one table. `{self.table}` is filled in on lookup."""

    def __init__(self, table: str = "", **statements: str) -> None:
        self.table = table
        super().__init__(**statements)
        self.setdefault("exists", f"SELECT * FROM pg_tables WHERE tablename = '{table}';")
        if "create_table" not in self:
            logging.warning("no create_table statement for %s", table)

    def get_query(self, key: str) -> str:
        return dict.__getitem__(self, key).replace("{self.table}", self.table)


# a canned response is either a list of results handed out in order,
# or a callable invoked with the query arguments every time
Canned = Union[list, Callable[..., Any]]


class PGInterface:
    """Every statement in `query_strings` becomes an awaitable method,
    e.g. `await manager.get_conversation(sender, recipient)`.

    `database` is a postgres URI, or a dict of canned responses keyed by
    statement name for running without a database."""

    def __init__(
        self,
        query_strings: PGExpressions,
        database: Union[str, dict[str, Canned]] = "",
        pool: Optional[asyncpg.Pool] = None,
    ) -> None:
        self.database = database
        self.queries = query_strings
        self.table = query_strings.table
        self.pool = pool
        self.invocations: list[dict] = []
        self.fake = isinstance(database, dict)
        self.logger = logging.getLogger(f"{self.table}{'.fake' if self.fake else ''}")

    async def connect_pg(self) -> None:
        self.pool = await asyncpg.create_pool(self.database)
        pools.append(self.pool)

    async def create_tables(self) -> None:
        """Create the table and any indexes named `create_*_index`"""
        if self.fake:
            self.logger.warning("fake database, not creating %s", self.table)
            return
        await self.create_table()
        for key in self.queries:
            if key.startswith("create") and key.endswith("index"):
                self.logger.info("creating index via %s", key)
                await getattr(self, key)()

    async def execute(self, qstring: str, *args: Any) -> Optional[list[asyncpg.Record]]:
        if not self.pool and not self.fake:
            await self.connect_pg()
        if not self.pool:
            return None
        async with self.pool.acquire() as connection:
            return await connection.fetch(qstring, *args, timeout=QUERY_TIMEOUT)

    def canned(self, name: str) -> Callable[..., Awaitable[Any]]:
        assert isinstance(self.database, dict)
        responses = self.database.get(name)

        async def return_canned(*args: Any) -> Any:
            self.invocations.append({name: args})
            if callable(responses):
                resp = responses(*args)
            elif responses:
                resp = responses.pop(0)
            else:
                resp = None
            if inspect.isawaitable(resp):
                resp = await resp
            self.logger.debug("%s%s -> %s", name, shorten(args), shorten(resp))
            return resp

        return return_canned

    def __getattr__(self, key: str) -> Callable[..., Awaitable[Any]]:
        """Only reached when normal attribute lookup fails"""
        if key.startswith("__") or key in ("queries", "database", "fake"):
            raise AttributeError(key)
        try:
            statement = self.queries.get_query(key)
        except KeyError as e:
            raise ValueError(f"No statement of name {key} found!") from e
        if self.fake:
            return self.canned(key)

        async def executer_with_args(*args: Any) -> Any:
            resp = await self.execute(statement, *args)
            self.logger.debug("%s %s -> %s", key, shorten(args), shorten(resp))
            return resp

        return executer_with_args
