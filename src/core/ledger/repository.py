# src/core/ledger/repository.py
"""
Репозитории кошельков и проводок.

with_account_lock(user_ids) захватывает счета в порядке возрастания ID,
поэтому встречные переводы A->B и B->A не дедлочат. Всё, что записано
внутри блока, фиксируется атомарно на выходе.
"""

from __future__ import annotations

import asyncio
import json
import weakref
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Optional

import asyncpg

from src.common.errors import ConflictError, InternalError
from src.common.logger import log_error
from src.core.ledger.models import LedgerEntry, WalletAccount
from src.infra.database import DatabaseManager


class AccountLock(ABC):
    """Захваченные счета внутри with_account_lock."""

    def __init__(self, accounts: dict[int, WalletAccount]) -> None:
        self.accounts = accounts

    @abstractmethod
    async def find_entry(self, reference: str) -> Optional[LedgerEntry]:
        """Проводка с этим ключом, если уже есть."""

    @abstractmethod
    async def save_account(self, account: WalletAccount) -> None: ...

    @abstractmethod
    async def append_entry(self, entry: LedgerEntry) -> None: ...


class LedgerRepository(ABC):
    """Контракт хранилища леджера."""

    @abstractmethod
    async def create_account(self, account: WalletAccount) -> WalletAccount:
        """Открывает счёт; если он уже есть, возвращает существующий."""

    @abstractmethod
    async def get_account(self, user_id: int) -> Optional[WalletAccount]: ...

    @abstractmethod
    async def find_by_number(self, account_number: str) -> Optional[WalletAccount]: ...

    @abstractmethod
    async def get_entry(self, reference: str) -> Optional[LedgerEntry]: ...

    @abstractmethod
    def with_account_lock(self, user_ids: Iterable[int]) -> Any:
        """Асинхронный контекстный менеджер, отдающий AccountLock."""

    @abstractmethod
    async def list_entries(self, user_id: int, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        """История счёта, новые сверху."""

    @abstractmethod
    async def all_entries_for(self, user_id: int) -> list[LedgerEntry]:
        """Вся история счёта в порядке проведения."""


# =============================================================================
# IN-MEMORY
# =============================================================================

class _MemoryAccountLock(AccountLock):
    def __init__(self, accounts: dict[int, WalletAccount], repo: InMemoryLedgerRepository) -> None:
        super().__init__(accounts)
        self._repo = repo
        self.pending_accounts: dict[int, WalletAccount] = {}
        self.pending_entries: list[LedgerEntry] = []

    async def find_entry(self, reference: str) -> Optional[LedgerEntry]:
        for entry in self.pending_entries:
            if entry.reference == reference:
                return entry
        return await self._repo.get_entry(reference)

    async def save_account(self, account: WalletAccount) -> None:
        self.accounts[account.user_id] = account
        self.pending_accounts[account.user_id] = account.model_copy(deep=True)

    async def append_entry(self, entry: LedgerEntry) -> None:
        self.pending_entries.append(entry.model_copy(deep=True))


class InMemoryLedgerRepository(LedgerRepository):
    """Леджер в памяти процесса: упорядоченные asyncio.Lock на каждый счёт."""

    def __init__(self) -> None:
        self._accounts: dict[int, WalletAccount] = {}
        self._entries: list[LedgerEntry] = []
        self._references: dict[str, LedgerEntry] = {}
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def create_account(self, account: WalletAccount) -> WalletAccount:
        existing = self._accounts.get(account.user_id)
        if existing is not None:
            return existing.model_copy(deep=True)
        self._accounts[account.user_id] = account.model_copy(deep=True)
        return account

    async def get_account(self, user_id: int) -> Optional[WalletAccount]:
        account = self._accounts.get(user_id)
        return account.model_copy(deep=True) if account else None

    async def find_by_number(self, account_number: str) -> Optional[WalletAccount]:
        for account in self._accounts.values():
            if account.account_number == account_number:
                return account.model_copy(deep=True)
        return None

    async def get_entry(self, reference: str) -> Optional[LedgerEntry]:
        entry = self._references.get(reference)
        return entry.model_copy(deep=True) if entry else None

    @asynccontextmanager
    async def with_account_lock(self, user_ids: Iterable[int]) -> AsyncIterator[AccountLock]:
        ids = sorted(set(user_ids))
        async with AsyncExitStack() as stack:
            for user_id in ids:
                await stack.enter_async_context(self._lock_for(user_id))

            accounts = {
                user_id: self._accounts[user_id].model_copy(deep=True)
                for user_id in ids
                if user_id in self._accounts
            }
            handle = _MemoryAccountLock(accounts, self)
            yield handle

            for entry in handle.pending_entries:
                if entry.reference in self._references:
                    raise ConflictError("Проводка с таким ключом уже существует", code="DUPLICATE_REFERENCE")
            self._accounts.update(handle.pending_accounts)
            for entry in handle.pending_entries:
                self._entries.append(entry)
                self._references[entry.reference] = entry

    async def list_entries(self, user_id: int, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        entries = [e for e in reversed(self._entries) if user_id in (e.sender_id, e.receiver_id)]
        return [e.model_copy(deep=True) for e in entries[offset:offset + limit]]

    async def all_entries_for(self, user_id: int) -> list[LedgerEntry]:
        return [
            e.model_copy(deep=True)
            for e in self._entries
            if user_id in (e.sender_id, e.receiver_id)
        ]


# =============================================================================
# POSTGRESQL
# =============================================================================

ACCOUNT_COLUMNS = """
    user_id, account_number, balance, initial_balance, floor, currency,
    status, is_system, daily_limit_used, last_transaction_date,
    created_at, updated_at
"""

ENTRY_COLUMNS = """
    id, reference, entry_type, sender_id, receiver_id, amount, fee, currency,
    sender_balance_after, receiver_balance_after, status, description,
    metadata, created_at
"""


class _PostgresAccountLock(AccountLock):
    def __init__(self, accounts: dict[int, WalletAccount], conn: asyncpg.Connection) -> None:
        super().__init__(accounts)
        self._conn = conn

    async def find_entry(self, reference: str) -> Optional[LedgerEntry]:
        row = await self._conn.fetchrow(
            f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE reference = $1",
            reference,
        )
        return PostgresLedgerRepository.row_to_entry(row) if row else None

    async def save_account(self, account: WalletAccount) -> None:
        await self._conn.execute(
            """
            UPDATE wallet_accounts SET
                balance = $2, status = $3, daily_limit_used = $4,
                last_transaction_date = $5, updated_at = $6
            WHERE user_id = $1
            """,
            account.user_id,
            account.balance,
            account.status.value,
            account.daily_limit_used,
            account.last_transaction_date,
            account.updated_at,
        )
        self.accounts[account.user_id] = account

    async def append_entry(self, entry: LedgerEntry) -> None:
        await self._conn.execute(
            f"""
            INSERT INTO ledger_entries ({ENTRY_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            """,
            entry.id,
            entry.reference,
            entry.entry_type.value,
            entry.sender_id,
            entry.receiver_id,
            entry.amount,
            entry.fee,
            entry.currency,
            entry.sender_balance_after,
            entry.receiver_balance_after,
            entry.status.value,
            entry.description,
            json.dumps(entry.metadata, ensure_ascii=False, default=str),
            entry.created_at,
        )


class PostgresLedgerRepository(LedgerRepository):
    """Леджер в PostgreSQL: SELECT ... ORDER BY user_id FOR UPDATE."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def create_account(self, account: WalletAccount) -> WalletAccount:
        try:
            await self._db.execute(
                f"""
                INSERT INTO wallet_accounts ({ACCOUNT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (user_id) DO NOTHING
                """,
                account.user_id,
                account.account_number,
                account.balance,
                account.initial_balance,
                account.floor,
                account.currency,
                account.status.value,
                account.is_system,
                account.daily_limit_used,
                account.last_transaction_date,
                account.created_at,
                account.updated_at,
            )
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка открытия счёта {account.user_id}: {e}")
            raise InternalError("Не удалось открыть счёт") from e
        return await self.get_account(account.user_id) or account

    async def get_account(self, user_id: int) -> Optional[WalletAccount]:
        row = await self._fetchrow(
            f"SELECT {ACCOUNT_COLUMNS} FROM wallet_accounts WHERE user_id = $1",
            user_id,
        )
        return self.row_to_account(row) if row else None

    async def find_by_number(self, account_number: str) -> Optional[WalletAccount]:
        row = await self._fetchrow(
            f"SELECT {ACCOUNT_COLUMNS} FROM wallet_accounts WHERE account_number = $1",
            account_number,
        )
        return self.row_to_account(row) if row else None

    async def get_entry(self, reference: str) -> Optional[LedgerEntry]:
        row = await self._fetchrow(
            f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE reference = $1",
            reference,
        )
        return self.row_to_entry(row) if row else None

    @asynccontextmanager
    async def with_account_lock(self, user_ids: Iterable[int]) -> AsyncIterator[AccountLock]:
        ids = sorted(set(user_ids))
        try:
            async with self._db.transaction() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {ACCOUNT_COLUMNS} FROM wallet_accounts
                    WHERE user_id = ANY($1::bigint[])
                    ORDER BY user_id
                    FOR UPDATE
                    """,
                    ids,
                )
                accounts = {row["user_id"]: self.row_to_account(row) for row in rows}
                yield _PostgresAccountLock(accounts, conn)
        except asyncpg.UniqueViolationError as e:
            raise ConflictError("Проводка с таким ключом уже существует", code="DUPLICATE_REFERENCE") from e
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка транзакции леджера {ids}: {e}")
            raise InternalError("Сбой хранилища леджера") from e

    async def list_entries(self, user_id: int, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        rows = await self._fetch(
            f"""
            SELECT {ENTRY_COLUMNS} FROM ledger_entries
            WHERE sender_id = $1 OR receiver_id = $1
            ORDER BY created_at DESC, id DESC
            LIMIT $2 OFFSET $3
            """,
            user_id,
            limit,
            offset,
        )
        return [self.row_to_entry(r) for r in rows]

    async def all_entries_for(self, user_id: int) -> list[LedgerEntry]:
        rows = await self._fetch(
            f"""
            SELECT {ENTRY_COLUMNS} FROM ledger_entries
            WHERE sender_id = $1 OR receiver_id = $1
            ORDER BY created_at, id
            """,
            user_id,
        )
        return [self.row_to_entry(r) for r in rows]

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        try:
            return await self._db.fetch(query, *args)
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка чтения леджера: {e}")
            raise InternalError("Сбой хранилища леджера") from e

    async def _fetchrow(self, query: str, *args: Any) -> Optional[asyncpg.Record]:
        try:
            return await self._db.fetchrow(query, *args)
        except asyncpg.PostgresError as e:
            await log_error(f"Ошибка чтения леджера: {e}")
            raise InternalError("Сбой хранилища леджера") from e

    @staticmethod
    def row_to_account(row: Any) -> WalletAccount:
        return WalletAccount(**dict(row))

    @staticmethod
    def row_to_entry(row: Any) -> LedgerEntry:
        data = dict(row)
        data["id"] = str(data["id"])
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        data["metadata"] = data.get("metadata") or {}
        return LedgerEntry(**data)
