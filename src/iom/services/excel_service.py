from __future__ import annotations

import logging

from openpyxl import load_workbook

from iom.domain.errors import ValidationError
from iom.domain.models import Actor, StocktakeImportResult
from iom.services.concurrency import require_actor

log = logging.getLogger(__name__)

REQUIRED_HEADERS = ("sku", "counted_stock")


def _counted(value) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean stock count")
    number = float(value)
    if not number.is_integer() or number < 0:
        raise ValueError(f"invalid stock count {value!r}")
    return int(number)


class ExcelService:
    def __init__(self, repo, inventory_service):
        self.repo = repo
        self.inventory = inventory_service

    def import_stocktake_excel(self, actor: Actor | None, path: str, atomic: bool = False) -> StocktakeImportResult:
        """
        Excel represents a STOCKTAKE (absolute counted stock), not a delta.
        Headers:
          sku | counted_stock | note

        Every usable row becomes one adjustment of a single batch.
        """
        actor = require_actor(actor)
        wb = load_workbook(path, read_only=True, data_only=True)
        try:
            ws = wb.active
            rows = ws.iter_rows(values_only=True)
            header_row = next(rows, None) or ()
            headers = {
                v.strip().lower(): idx for idx, v in enumerate(header_row) if isinstance(v, str)
            }
            for h in REQUIRED_HEADERS:
                if h not in headers:
                    raise ValidationError(f"Missing column header: {h}")

            adjustments = []
            skipped = 0
            for row_no, row in enumerate(rows, start=2):
                def cell(name):
                    idx = headers.get(name)
                    return row[idx] if idx is not None and idx < len(row) else None

                sku = cell("sku")
                counted = cell("counted_stock")
                if not sku or counted is None:
                    skipped += 1
                    continue
                try:
                    new_stock = _counted(counted)
                except (TypeError, ValueError) as e:
                    log.warning("stocktake_row_skipped row=%s error=%s", row_no, e)
                    skipped += 1
                    continue

                product = self.repo.get_product_by_sku(str(sku).strip())
                if not product:
                    log.warning("stocktake_row_skipped row=%s error=unknown sku %s", row_no, sku)
                    skipped += 1
                    continue
                note = cell("note")
                adjustments.append(
                    {
                        "product_id": product.id,
                        "new_stock": new_stock,
                        "note": str(note).strip() if note else "Stocktake import",
                    }
                )
        finally:
            wb.close()

        results = self.inventory.adjust_stock_batch(actor, adjustments, atomic=atomic) if adjustments else []
        log.info(
            "stocktake_imported path=%s applied=%s failed=%s skipped=%s",
            path,
            sum(1 for r in results if r.ok),
            sum(1 for r in results if not r.ok),
            skipped,
        )
        return StocktakeImportResult(results=results, skipped=skipped)
