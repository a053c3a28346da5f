"""
Prisma-backed storage for settlement uploads, the cost master snapshot and
analysis results.

Results are keyed by upload id and written with a single upsert, so
re-analyzing an upload replaces its previous result instead of adding one.
There is no implicit "current" result: callers always pass an upload id.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from prisma import Json, Prisma
from tqdm import tqdm

from settlement_errors import DuplicateUploadError, UploadNotFoundError
from settlement_reconcile import parse_master_record

logger = logging.getLogger(__name__)

# Large uploads run many create_many batches inside one transaction
TX_TIMEOUT = timedelta(minutes=5)


def _result_record(model) -> Dict:
    return {
        "id": model.id,
        "upload_id": model.uploadId,
        "marketplace": model.marketplace,
        "filename": model.filename,
        "totals": model.totals or {},
        "summary_tables": model.summaryTables or {},
        "created_at": model.createdAt,
        "updated_at": model.updatedAt,
    }


def _upload_record(model) -> Dict:
    return {
        "id": model.id,
        "filename": model.filename,
        "original_name": model.originalName,
        "marketplace": model.marketplace,
        "row_count": model.rowCount,
        "created_at": model.createdAt,
    }


class SettlementStore:
    """Async persistence layer. Use as ``async with SettlementStore() as store``."""

    def __init__(self, batch_size: int = 500):
        self.prisma = Prisma()  # Will use DATABASE_URL from environment
        self.batch_size = batch_size

    async def connect(self):
        try:
            await self.prisma.connect()
            logger.info("Database connection established")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self):
        if self.prisma.is_connected():
            await self.prisma.disconnect()
            logger.info("Database connection closed")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
        return False

    # --- Uploads ---
    async def create_upload(self, filename: str, original_name: str, marketplace: str, rows: List[Dict]) -> str:
        """Store a settlement file's raw rows and return the new upload id.

        The upload record and every row batch are written in one transaction,
        so a failed batch leaves nothing behind and the file can be uploaded
        again.
        """
        duplicate = await self.prisma.upload.find_first(
            where={"marketplace": marketplace, "originalName": original_name}
        )
        if duplicate:
            raise DuplicateUploadError(original_name, marketplace)

        async with self.prisma.tx(timeout=TX_TIMEOUT) as tx:
            upload = await tx.upload.create(
                data={
                    "filename": filename,
                    "originalName": original_name,
                    "marketplace": marketplace,
                    "rowCount": len(rows),
                }
            )

            batches = range(0, len(rows), self.batch_size)
            for start in tqdm(batches, desc=f"💾 Saving {original_name}", unit="batch", leave=False):
                batch = rows[start:start + self.batch_size]
                await tx.settlementrow.create_many(
                    data=[
                        {"uploadId": upload.id, "position": start + i, "raw": Json(row)}
                        for i, row in enumerate(batch)
                    ]
                )

        logger.info(f"Stored upload {upload.id} ({original_name}, {len(rows)} rows, {marketplace})")
        return upload.id

    async def get_upload(self, upload_id: str) -> Dict:
        upload = await self.prisma.upload.find_unique(where={"id": upload_id})
        if upload is None:
            raise UploadNotFoundError(upload_id)
        return _upload_record(upload)

    async def list_uploads(self, marketplace: Optional[str] = None) -> List[Dict]:
        where = {"marketplace": marketplace} if marketplace else {}
        uploads = await self.prisma.upload.find_many(where=where, order={"createdAt": "desc"})
        return [_upload_record(u) for u in uploads]

    async def delete_upload(self, upload_id: str) -> Dict:
        """Delete an upload with its rows and result (cascade)."""
        deleted = await self.prisma.upload.delete(where={"id": upload_id})
        if deleted is None:
            raise UploadNotFoundError(upload_id)
        logger.info(f"Deleted upload {upload_id} ({deleted.originalName})")
        return _upload_record(deleted)

    async def load_rows(self, upload_id: str) -> List[Dict]:
        rows = await self.prisma.settlementrow.find_many(
            where={"uploadId": upload_id},
            order={"position": "asc"},
        )
        if not rows:
            raise UploadNotFoundError(upload_id)
        return [row.raw for row in rows]

    # --- Master snapshot ---
    async def replace_master(self, marketplace: str, rows: List[Dict]) -> int:
        """Replace the master snapshot of a marketplace (delete + reinsert, one transaction)."""
        data = []
        for row in rows:
            entry = parse_master_record(row)
            data.append({
                "marketplace": marketplace,
                "sku": entry.sku,
                "name": entry.product_name,
                "cog": entry.unit_cost,
                "raw": Json(row),
            })

        async with self.prisma.tx(timeout=TX_TIMEOUT) as tx:
            await tx.masterentry.delete_many(where={"marketplace": marketplace})
            for start in range(0, len(data), self.batch_size):
                await tx.masterentry.create_many(data=data[start:start + self.batch_size])

        logger.info(f"Replaced {marketplace} master with {len(data)} rows")
        return len(data)

    async def load_master(self, marketplace: str) -> List[Dict]:
        entries = await self.prisma.masterentry.find_many(
            where={"marketplace": marketplace},
            order={"id": "asc"},
        )
        return [{"sku": e.sku, "name": e.name, "cog": e.cog, "raw": e.raw} for e in entries]

    # --- Analysis results ---
    async def save_result(self, upload_id: str, marketplace: str, filename: str, result: Dict) -> Dict:
        """Upsert the analysis result of an upload (full replace, no merge)."""
        payload = {
            "marketplace": marketplace,
            "filename": filename,
            "totals": Json(result["totals"]),
            "summaryTables": Json(result["summary_tables"]),
        }
        saved = await self.prisma.analysisresult.upsert(
            where={"uploadId": upload_id},
            data={
                "create": {"uploadId": upload_id, **payload},
                "update": payload,
            },
        )
        logger.info(f"Saved analysis result for upload {upload_id}")
        return _result_record(saved)

    async def load_result(self, upload_id: str) -> Optional[Dict]:
        result = await self.prisma.analysisresult.find_unique(where={"uploadId": upload_id})
        return _result_record(result) if result else None

    async def list_results(self, marketplace: Optional[str] = None) -> List[Dict]:
        where = {"marketplace": marketplace} if marketplace else {}
        results = await self.prisma.analysisresult.find_many(where=where, order={"createdAt": "desc"})
        return [_result_record(r) for r in results]


def run_with_store(fn, store: Optional[SettlementStore] = None):
    """Run ``await fn(store)`` on a private event loop from synchronous code.

    The store is connected first and always disconnected, and the loop closed,
    even when ``fn`` raises.
    """
    store = store or SettlementStore()
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(store.connect())
        return loop.run_until_complete(fn(store))
    finally:
        loop.run_until_complete(store.disconnect())
        loop.close()
        asyncio.set_event_loop(None)
