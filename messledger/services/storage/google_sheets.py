"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is a supported backend because:
1. The household can look at (and print) the ledger directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- Not suitable for high-volume data (one household is fine)
- No native transactions: writes made inside transaction() are
  journaled and undone in reverse order if the block fails
- Limited query capabilities (we filter in Python)

Each ledger entity lives in its own worksheet, one row per entity, with
the pydantic field names as the header row. Lists and tagged variants
(deposit slots, expense share) are JSON-encoded in a single cell.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import date, datetime
from typing import Optional, TypeVar, Union
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from pydantic import BaseModel
from tenacity import retry, stop_after_attempt, wait_exponential

from messledger.config import get_settings
from messledger.models.audit import AuditEvent, AuditEventType, AuditSeverity
from messledger.models.ledger import (
    CarryForwardUpdate,
    CommonExpense,
    DepositRecord,
    FundTransfer,
    MealRecord,
    MealSlot,
    Member,
    MonthStatus,
    ShoppingPurchase,
    SlotUpdate,
    UtilityBill,
    UtilityContribution,
    normalize_month,
)
from messledger.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerStorageInterface,
    StorageError,
)


ModelT = TypeVar("ModelT", bound=BaseModel)

logger = structlog.get_logger(__name__)

# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "actor_id",
    "description",
    "details_json",
    "error_code",
    "error_message",
]


class SheetTable:
    """How one ledger entity maps onto a worksheet."""

    def __init__(
        self,
        name: str,
        model: type[BaseModel],
        key_columns: tuple[str, ...],
        json_columns: tuple[str, ...] = (),
    ):
        self.name = name
        self.model = model
        self.key_columns = key_columns
        self.json_columns = json_columns
        self.columns = list(model.model_fields)

    def to_row(self, row: BaseModel) -> list[str]:
        data = row.model_dump(mode="json")
        cells = []
        for column in self.columns:
            value = data.get(column)
            if value is None:
                cells.append("")
            elif column in self.json_columns:
                cells.append(json.dumps(value))
            else:
                cells.append(str(value))
        return cells

    def from_row(self, cells: list[str]):
        data = {}
        for column, value in zip(self.columns, cells):
            # Missing cells fall back to model defaults
            if value == "":
                continue
            data[column] = json.loads(value) if column in self.json_columns else value
        return self.model.model_validate(data)

    def key_of(self, row: BaseModel) -> list[str]:
        cells = self.to_row(row)
        return [cells[self.columns.index(c)] for c in self.key_columns]

    def matches(self, cells: list[str], key: list[str]) -> bool:
        for column, expected in zip(self.key_columns, key):
            index = self.columns.index(column)
            actual = cells[index] if index < len(cells) else ""
            if actual != expected:
                return False
        return True


MEMBERS = SheetTable("members", Member, ("id",))
MEAL_RECORDS = SheetTable("meal_records", MealRecord, ("member_id", "meal_date", "slot"))
PURCHASES = SheetTable("purchases", ShoppingPurchase, ("id",))
FUND_TRANSFERS = SheetTable("fund_transfers", FundTransfer, ("id",))
COMMON_EXPENSES = SheetTable(
    "common_expenses", CommonExpense, ("id",), json_columns=("share",)
)
UTILITY_BILLS = SheetTable("utility_bills", UtilityBill, ("category", "month"))
UTILITY_CONTRIBUTIONS = SheetTable(
    "utility_contributions", UtilityContribution, ("member_id", "category", "month")
)
DEPOSITS = SheetTable("deposits", DepositRecord, ("member_id", "month"), json_columns=("slots",))
MONTH_STATUS = SheetTable("month_status", MonthStatus, ("month",))


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[str, gspread.Worksheet] = {}
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_worksheet(self, name: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet with the given header row."""
        title = f"{self._settings.sheet_prefix}{name}"
        if title in self._worksheets:
            return self._worksheets[title]

        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        self._worksheets[title] = sheet
        return sheet

    def get_audit_sheet(self) -> gspread.Worksheet:
        """Get or create the Audit worksheet."""
        return self.get_worksheet(
            self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def read_all(self, sheet: gspread.Worksheet) -> list[list[str]]:
        """All data rows, header excluded."""
        return sheet.get_all_values()[1:]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def append_row(self, sheet: gspread.Worksheet, cells: list[str]) -> None:
        sheet.append_row(cells, value_input_option="RAW")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def update_row(self, sheet: gspread.Worksheet, row_number: int, cells: list[str]) -> None:
        sheet.update(range_name=f"A{row_number}", values=[cells], value_input_option="RAW")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def delete_row(self, sheet: gspread.Worksheet, row_number: int) -> None:
        sheet.delete_rows(row_number)


class GoogleSheetsLedgerStorage(LedgerStorageInterface):
    """
    Google Sheets implementation of ledger storage.

    Every write inside transaction() records the previous state of the
    row it touched; on failure the journal is replayed backwards.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        self._lock = asyncio.Lock()
        self._journal: ContextVar[Optional[list]] = ContextVar(
            f"sheets_ledger_journal_{id(self)}", default=None
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self):
        if self._journal.get() is not None:
            yield
            return

        async with self._lock:
            journal: list = []
            token = self._journal.set(journal)
            try:
                yield
            except BaseException:
                self._rollback(journal)
                raise
            finally:
                self._journal.reset(token)

    def _record(self, table: SheetTable, key: list[str], previous: Optional[list[str]]) -> None:
        journal = self._journal.get()
        if journal is not None:
            journal.append((table, key, previous))

    def _rollback(self, journal: list) -> None:
        for table, key, previous in reversed(journal):
            try:
                sheet = self._sheet(table)
                found = self._find(table, key)
                if previous is None:
                    if found:
                        self._client.delete_row(sheet, found[0])
                elif found:
                    self._client.update_row(sheet, found[0], previous)
                else:
                    self._client.append_row(sheet, previous)
            except Exception as e:
                # Keep undoing the rest; the failed step is left for manual repair
                logger.error(
                    "sheets_rollback_step_failed",
                    table=table.name,
                    key=key,
                    error=str(e),
                )

    # ------------------------------------------------------------------
    # Generic row helpers
    # ------------------------------------------------------------------

    def _sheet(self, table: SheetTable) -> gspread.Worksheet:
        return self._client.get_worksheet(table.name, table.columns)

    def _read(self, table: SheetTable) -> list[tuple[int, list[str]]]:
        try:
            rows = self._client.read_all(self._sheet(table))
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read {table.name}: {e}")
        # Sheet row numbers are 1-based and row 1 is the header
        return [(idx, row) for idx, row in enumerate(rows, start=2) if row and row[0]]

    def _models(self, table: SheetTable) -> list:
        models = []
        for idx, cells in self._read(table):
            try:
                models.append(table.from_row(cells))
            except Exception as e:
                raise StorageError(f"Malformed row {idx} in {table.name}: {e}")
        return models

    def _find(self, table: SheetTable, key: list[str]) -> Optional[tuple[int, list[str]]]:
        for idx, cells in self._read(table):
            if table.matches(cells, key):
                return idx, cells
        return None

    def _get(self, table: SheetTable, key: list[str]):
        found = self._find(table, key)
        return table.from_row(found[1]) if found else None

    def _insert(self, table: SheetTable, row: ModelT) -> ModelT:
        key = table.key_of(row)
        if self._find(table, key):
            raise DuplicateError(f"{table.name} row already exists: {key}")
        try:
            self._client.append_row(self._sheet(table), table.to_row(row))
        except Exception as e:
            raise StorageError(f"Failed to insert into {table.name}: {e}")
        self._record(table, key, None)
        return row

    def _upsert(self, table: SheetTable, row: ModelT, keep_id: bool = True) -> ModelT:
        key = table.key_of(row)
        found = self._find(table, key)
        try:
            if found:
                idx, previous = found
                if keep_id and "id" in table.columns:
                    row = row.model_copy(update={"id": table.from_row(previous).id})
                self._client.update_row(self._sheet(table), idx, table.to_row(row))
                self._record(table, key, previous)
            else:
                self._client.append_row(self._sheet(table), table.to_row(row))
                self._record(table, key, None)
        except Exception as e:
            raise StorageError(f"Failed to write {table.name}: {e}")
        return row

    def _delete(self, table: SheetTable, key: list[str]) -> bool:
        found = self._find(table, key)
        if not found:
            return False
        idx, previous = found
        try:
            self._client.delete_row(self._sheet(table), idx)
        except Exception as e:
            raise StorageError(f"Failed to delete from {table.name}: {e}")
        self._record(table, key, previous)
        return True

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def list_members(self) -> list[Member]:
        return self._models(MEMBERS)

    async def get_member(self, member_id: UUID) -> Optional[Member]:
        return self._get(MEMBERS, [str(member_id)])

    async def save_member(self, member: Member) -> Member:
        return self._upsert(MEMBERS, member)

    # ------------------------------------------------------------------
    # Meals
    # ------------------------------------------------------------------

    async def list_meal_records(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        member_id: Optional[UUID] = None,
    ) -> list[MealRecord]:
        records = []
        for record in self._models(MEAL_RECORDS):
            if date_from and record.meal_date < date_from:
                continue
            if date_to and record.meal_date >= date_to:
                continue
            if member_id and record.member_id != member_id:
                continue
            records.append(record)
        return records

    async def upsert_meal_record(self, record: MealRecord) -> MealRecord:
        return self._upsert(MEAL_RECORDS, record)

    async def delete_meal_record(
        self,
        member_id: UUID,
        meal_date: date,
        slot: MealSlot,
    ) -> bool:
        return self._delete(
            MEAL_RECORDS, [str(member_id), meal_date.isoformat(), slot.value]
        )

    # ------------------------------------------------------------------
    # Shopping and fund transfers
    # ------------------------------------------------------------------

    async def list_purchases(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        buyer_id: Optional[UUID] = None,
    ) -> list[ShoppingPurchase]:
        purchases = []
        for purchase in self._models(PURCHASES):
            if date_from and purchase.purchase_date < date_from:
                continue
            if date_to and purchase.purchase_date >= date_to:
                continue
            if buyer_id and purchase.buyer_id != buyer_id:
                continue
            purchases.append(purchase)
        return purchases

    async def get_purchase(self, purchase_id: UUID) -> Optional[ShoppingPurchase]:
        return self._get(PURCHASES, [str(purchase_id)])

    async def save_purchase(self, purchase: ShoppingPurchase) -> ShoppingPurchase:
        return self._insert(PURCHASES, purchase)

    async def delete_purchase(self, purchase_id: UUID) -> bool:
        return self._delete(PURCHASES, [str(purchase_id)])

    async def list_fund_transfers(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        buyer_id: Optional[UUID] = None,
    ) -> list[FundTransfer]:
        transfers = []
        for transfer in self._models(FUND_TRANSFERS):
            if date_from and transfer.transfer_date < date_from:
                continue
            if date_to and transfer.transfer_date >= date_to:
                continue
            if buyer_id and transfer.buyer_id != buyer_id:
                continue
            transfers.append(transfer)
        return transfers

    async def save_fund_transfer(self, transfer: FundTransfer) -> FundTransfer:
        return self._insert(FUND_TRANSFERS, transfer)

    # ------------------------------------------------------------------
    # Common expenses
    # ------------------------------------------------------------------

    async def list_common_expenses(
        self,
        month: date,
        payer_id: Optional[UUID] = None,
    ) -> list[CommonExpense]:
        month = normalize_month(month)
        return [
            e for e in self._models(COMMON_EXPENSES)
            if e.month == month and (payer_id is None or e.payer_id == payer_id)
        ]

    async def get_common_expense(self, expense_id: UUID) -> Optional[CommonExpense]:
        return self._get(COMMON_EXPENSES, [str(expense_id)])

    async def save_common_expense(self, expense: CommonExpense) -> CommonExpense:
        return self._insert(COMMON_EXPENSES, expense)

    async def delete_common_expense(self, expense_id: UUID) -> bool:
        return self._delete(COMMON_EXPENSES, [str(expense_id)])

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    async def list_utility_bills(self, month: date) -> list[UtilityBill]:
        month = normalize_month(month)
        return [b for b in self._models(UTILITY_BILLS) if b.month == month]

    async def upsert_utility_bill(self, bill: UtilityBill) -> UtilityBill:
        return self._upsert(UTILITY_BILLS, bill)

    async def list_utility_contributions(self, month: date) -> list[UtilityContribution]:
        month = normalize_month(month)
        return [c for c in self._models(UTILITY_CONTRIBUTIONS) if c.month == month]

    async def upsert_utility_contribution(
        self,
        contribution: UtilityContribution,
    ) -> UtilityContribution:
        return self._upsert(UTILITY_CONTRIBUTIONS, contribution)

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def list_deposit_records(self, month: date) -> list[DepositRecord]:
        month = normalize_month(month)
        return [d for d in self._models(DEPOSITS) if d.month == month]

    async def get_deposit_record(
        self,
        member_id: UUID,
        month: date,
    ) -> Optional[DepositRecord]:
        return self._get(DEPOSITS, [str(member_id), normalize_month(month).isoformat()])

    async def apply_deposit_update(
        self,
        member_id: UUID,
        month: date,
        update: Union[SlotUpdate, CarryForwardUpdate],
    ) -> DepositRecord:
        month = normalize_month(month)
        record = await self.get_deposit_record(member_id, month)
        if record is None:
            record = DepositRecord.empty(member_id, month)
        return self._upsert(DEPOSITS, record.apply(update))

    # ------------------------------------------------------------------
    # Month status
    # ------------------------------------------------------------------

    async def get_month_status(self, month: date) -> Optional[MonthStatus]:
        return self._get(MONTH_STATUS, [normalize_month(month).isoformat()])

    async def save_month_status(self, status: MonthStatus) -> MonthStatus:
        return self._upsert(MONTH_STATUS, status, keep_id=False)


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            entity_type=safe_get(4) or None,
            entity_id=UUID(safe_get(5)) if safe_get(5) else None,
            correlation_id=UUID(safe_get(6)) if safe_get(6) else None,
            actor_id=UUID(safe_get(7)) if safe_get(7) else None,
            description=safe_get(8),
            details=json.loads(safe_get(9)) if safe_get(9) else {},
            error_code=safe_get(10) or None,
            error_message=safe_get(11) or None,
        )

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_audit_sheet()
            self._client.append_row(sheet, event.to_sheets_row())
            return True
        except Exception as e:
            # Audit logging must not break the ledger write it describes
            logger.warning("audit_event_write_failed", error=str(e), event_id=str(event.event_id))
            return False

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get events by correlation ID."""
        try:
            rows = self._client.read_all(self._client.get_audit_sheet())
            events = [
                self._row_to_event(row)
                for row in rows
                if row and len(row) > 6 and row[6] == str(correlation_id)
            ]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get recent events."""
        try:
            rows = self._client.read_all(self._client.get_audit_sheet())
            events = [self._row_to_event(row) for row in rows if row and row[0]]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")

        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
