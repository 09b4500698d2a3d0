# menugen/core/async_supabase.py
import asyncio
from functools import partial
from typing import Any, Callable, Dict, List, Union
import logging

from supabase import Client

logger = logging.getLogger(__name__)


class AsyncSupabaseClient:
    """Async wrapper for Supabase client operations.

    The supabase client is synchronous; every call is pushed onto the default
    executor so the event loop keeps serving other pipelines meanwhile.
    """

    def __init__(self, client_factory: Callable[[], Client]):
        self._client_factory = client_factory
        self._client = None

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    async def _run(self, func):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)

    @staticmethod
    def _apply_filters(query, filters: Dict[str, Any]):
        for key, value in filters.items():
            if key == "eq":
                for field, val in value.items():
                    query = query.eq(field, val)
            elif key == "in_":
                for field, vals in value.items():
                    query = query.in_(field, list(vals))
            elif key == "order":
                for field, desc in value.items():
                    query = query.order(field, desc=desc)
            elif key == "limit":
                query = query.limit(value)
        return query

    async def table_insert(self, table_name: str, data: Union[Dict[str, Any], List[Dict[str, Any]]]):
        """Async wrapper for table insert operations"""
        func = partial(self.client.table(table_name).insert(data).execute)
        return await self._run(func)

    async def table_update(self, table_name: str, data: Dict[str, Any], **filters):
        """Async wrapper for table update operations"""
        query = self._apply_filters(self.client.table(table_name).update(data), filters)
        return await self._run(partial(query.execute))

    async def table_select(self, table_name: str, columns: str = "*", **filters):
        """Async wrapper for table select operations"""
        query = self._apply_filters(self.client.table(table_name).select(columns), filters)
        return await self._run(partial(query.execute))

    async def rpc(self, function_name: str, params: Dict[str, Any]):
        """Async wrapper for calling a Postgres function"""
        func = partial(self.client.rpc(function_name, params).execute)
        return await self._run(func)

    async def storage_upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Upload bytes to a storage bucket and return the public URL"""
        storage = self.client.storage.from_(bucket)
        upload = partial(
            storage.upload,
            file=data,
            path=path,
            file_options={
                "content-type": content_type,
                "upsert": "true"  # Must be string, not boolean
            }
        )
        await self._run(upload)
        return await self._run(partial(storage.get_public_url, path))
