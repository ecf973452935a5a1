"""
Persistent ledger store (SQLAlchemy ORM).

The only component that touches storage. Holds wallets, their key
material, derived addresses, the cached balance snapshot and the
transaction history. `apply_ledger_update` is the single multi-row write
path: new records, settlement-status changes and the snapshot commit
together or not at all.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Sequence

from sqlalchemy import (
    BigInteger,
    Boolean,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from wallet_errors import StorageInconsistency, WalletNotFound

logger = logging.getLogger(__name__)


class AddressClass(str, Enum):
    ONCHAIN = "onchain"
    OFFCHAIN = "offchain"
    BOARDING = "boarding"


class TxType(str, Enum):
    BOARDING = "Boarding"
    ONCHAIN_SEND = "OnchainSend"
    ONCHAIN_RECEIVE = "OnchainReceive"
    OFFCHAIN_SEND = "OffchainSend"
    OFFCHAIN_RECEIVE = "OffchainReceive"
    EXIT = "Exit"
    # Zero-amount marker for a committed round this wallet took part in.
    ROUND = "Round"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    pass


class Wallet(Base):
    __tablename__ = "wallets"

    wallet_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_accessed: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Wallet {self.wallet_id} name={self.name!r} active={self.is_active}>"


class WalletKeyMaterial(Base):
    __tablename__ = "wallet_keys"

    wallet_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("wallets.wallet_id"), primary_key=True
    )
    encrypted_seed: Mapped[str] = mapped_column(Text, nullable=False)
    public_key: Mapped[str] = mapped_column(String(66), nullable=False)


class BalanceSnapshot(Base):
    __tablename__ = "wallet_balances"

    wallet_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("wallets.wallet_id"), primary_key=True
    )
    onchain_confirmed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    onchain_pending: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    offchain_confirmed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    offchain_pending: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_updated: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    def counters(self) -> BalanceCounters:
        return BalanceCounters(
            onchain_confirmed=self.onchain_confirmed,
            onchain_pending=self.onchain_pending,
            offchain_confirmed=self.offchain_confirmed,
            offchain_pending=self.offchain_pending,
        )


class AddressRecord(Base):
    __tablename__ = "wallet_addresses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("wallets.wallet_id"), nullable=False, index=True
    )
    address: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    address_type: Mapped[AddressClass] = mapped_column(
        SAEnum(AddressClass, native_enum=False, values_callable=_enum_values, length=16),
        nullable=False,
    )
    derivation_index: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("wallet_id", "address_type", "derivation_index", name="uq_address_index"),
    )

    def __repr__(self) -> str:
        return f"<AddressRecord {self.address_type.value} #{self.derivation_index} {self.address}>"


class TransactionRecord(Base):
    __tablename__ = "wallet_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("wallets.wallet_id"), nullable=False, index=True
    )
    txid: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type_name: Mapped[TxType] = mapped_column(
        SAEnum(TxType, native_enum=False, values_callable=_enum_values, length=32),
        nullable=False,
    )
    # True = settled, False = pending, None = cancelled
    is_settled: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    raw_tx: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("wallet_id", "txid", "type_name", name="uq_wallet_tx_type"),
    )

    @property
    def key(self) -> tuple[str, TxType]:
        return (self.txid, self.type_name)

    @property
    def is_pending(self) -> bool:
        return self.is_settled is False

    def to_dict(self) -> dict[str, object]:
        return {
            "txid": self.txid,
            "amount": self.amount,
            "timestamp": self.timestamp,
            "type": self.type_name.value,
            "is_settled": self.is_settled,
        }

    def __repr__(self) -> str:
        return f"<TransactionRecord {self.type_name.value} {self.txid[:16]} amount={self.amount}>"


# ---------------------------------------------------------------------------
# Plain values passed into the store
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BalanceCounters:
    onchain_confirmed: int = 0
    onchain_pending: int = 0
    offchain_confirmed: int = 0
    offchain_pending: int = 0


@dataclass(frozen=True)
class NewTransaction:
    txid: str
    tx_type: TxType
    amount: int
    timestamp: int
    is_settled: bool | None
    raw_tx: str | None = None

    @property
    def key(self) -> tuple[str, TxType]:
        return (self.txid, self.tx_type)


@dataclass(frozen=True)
class StatusChange:
    txid: str
    tx_type: TxType
    is_settled: bool | None


@dataclass(frozen=True)
class LedgerUpdateResult:
    inserted: int
    updated: int
    snapshot_written: bool


class LedgerStore:
    """
    SQLAlchemy-backed ledger. Methods are synchronous; async callers run
    them through asyncio.to_thread.
    """

    def __init__(self, database_url: str, clock=time.time) -> None:
        engine_kwargs: dict[str, object] = {"future": True}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_kwargs)
        if database_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._clock = clock
        Base.metadata.create_all(self.engine)

    def _now(self) -> int:
        return int(self._clock())

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            logger.error("Ledger integrity violation, transaction rolled back: %s", exc)
            raise StorageInconsistency(f"Ledger integrity violation: {exc.orig}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()

    # ---- wallets ----

    def create_wallet(
        self, wallet_id: str, name: str, encrypted_seed: str, public_key: str
    ) -> Wallet:
        now = self._now()
        with self.session_scope() as session:
            wallet = Wallet(
                wallet_id=wallet_id,
                name=name,
                created_at=now,
                last_accessed=now,
                is_active=True,
            )
            session.add(wallet)
            # Child rows reference the wallet; it must be inserted first.
            session.flush()
            session.add(
                WalletKeyMaterial(
                    wallet_id=wallet_id, encrypted_seed=encrypted_seed, public_key=public_key
                )
            )
            session.add(BalanceSnapshot(wallet_id=wallet_id, last_updated=now))
        logger.info("Created wallet %s (%s)", wallet_id, name)
        return wallet

    def get_wallet(self, wallet_id: str) -> Wallet:
        with self.session_scope() as session:
            wallet = session.get(Wallet, wallet_id)
            if wallet is None:
                raise WalletNotFound(f"Wallet not found: {wallet_id}")
            return wallet

    def touch_wallet(self, wallet_id: str) -> Wallet:
        with self.session_scope() as session:
            wallet = session.get(Wallet, wallet_id)
            if wallet is None:
                raise WalletNotFound(f"Wallet not found: {wallet_id}")
            wallet.last_accessed = self._now()
            return wallet

    def set_wallet_active(self, wallet_id: str, active: bool) -> Wallet:
        with self.session_scope() as session:
            wallet = session.get(Wallet, wallet_id)
            if wallet is None:
                raise WalletNotFound(f"Wallet not found: {wallet_id}")
            wallet.is_active = active
            return wallet

    def list_wallets(self, active_only: bool = True) -> list[Wallet]:
        with self.session_scope() as session:
            stmt = select(Wallet).order_by(Wallet.created_at, Wallet.wallet_id)
            if active_only:
                stmt = stmt.where(Wallet.is_active.is_(True))
            return list(session.scalars(stmt))

    def get_key_material(self, wallet_id: str) -> WalletKeyMaterial:
        with self.session_scope() as session:
            material = session.get(WalletKeyMaterial, wallet_id)
            if material is None:
                if session.get(Wallet, wallet_id) is None:
                    raise WalletNotFound(f"Wallet not found: {wallet_id}")
                raise StorageInconsistency(f"Wallet {wallet_id} has no key material")
            return material

    # ---- addresses ----

    def current_address(self, wallet_id: str, address_class: AddressClass) -> AddressRecord | None:
        with self.session_scope() as session:
            stmt = (
                select(AddressRecord)
                .where(
                    AddressRecord.wallet_id == wallet_id,
                    AddressRecord.address_type == address_class,
                )
                .order_by(AddressRecord.id.desc())
                .limit(1)
            )
            return session.scalars(stmt).first()

    def list_addresses(
        self, wallet_id: str, address_class: AddressClass | None = None
    ) -> list[AddressRecord]:
        with self.session_scope() as session:
            stmt = select(AddressRecord).where(AddressRecord.wallet_id == wallet_id)
            if address_class is not None:
                stmt = stmt.where(AddressRecord.address_type == address_class)
            return list(session.scalars(stmt.order_by(AddressRecord.id)))

    def next_derivation_index(self, wallet_id: str, address_class: AddressClass) -> int:
        with self.session_scope() as session:
            stmt = select(AddressRecord.derivation_index).where(
                AddressRecord.wallet_id == wallet_id,
                AddressRecord.address_type == address_class,
                AddressRecord.derivation_index.is_not(None),
            )
            indexes = list(session.scalars(stmt))
        return max(indexes) + 1 if indexes else 0

    def add_address(
        self,
        wallet_id: str,
        address: str,
        address_class: AddressClass,
        derivation_index: int | None,
    ) -> AddressRecord:
        with self.session_scope() as session:
            if session.get(Wallet, wallet_id) is None:
                raise WalletNotFound(f"Wallet not found: {wallet_id}")
            record = AddressRecord(
                wallet_id=wallet_id,
                address=address,
                address_type=address_class,
                derivation_index=derivation_index,
                created_at=self._now(),
            )
            session.add(record)
        return record

    # ---- balances ----

    def get_snapshot(self, wallet_id: str) -> BalanceSnapshot | None:
        with self.session_scope() as session:
            return session.get(BalanceSnapshot, wallet_id)

    # ---- transactions ----

    def list_transactions(
        self,
        wallet_id: str,
        limit: int | None = None,
        offset: int = 0,
        tx_type: TxType | None = None,
    ) -> list[TransactionRecord]:
        with self.session_scope() as session:
            stmt = select(TransactionRecord).where(TransactionRecord.wallet_id == wallet_id)
            if tx_type is not None:
                stmt = stmt.where(TransactionRecord.type_name == tx_type)
            stmt = stmt.order_by(TransactionRecord.timestamp, TransactionRecord.id).offset(offset)
            if limit is not None:
                stmt = stmt.limit(limit)
            return list(session.scalars(stmt))

    def find_transactions(self, wallet_id: str, txid: str) -> list[TransactionRecord]:
        with self.session_scope() as session:
            stmt = (
                select(TransactionRecord)
                .where(TransactionRecord.wallet_id == wallet_id, TransactionRecord.txid == txid)
                .order_by(TransactionRecord.id)
            )
            return list(session.scalars(stmt))

    def find_transaction(
        self, wallet_id: str, txid: str, tx_type: TxType
    ) -> TransactionRecord | None:
        with self.session_scope() as session:
            return _find_record(session, wallet_id, txid, tx_type)

    def apply_ledger_update(
        self,
        wallet_id: str,
        new_records: Sequence[NewTransaction] = (),
        status_changes: Sequence[StatusChange] = (),
        snapshot: BalanceCounters | None = None,
    ) -> LedgerUpdateResult:
        """
        Atomically insert records, apply settlement transitions and replace
        the balance snapshot.

        Records already present under (wallet_id, txid, type) are skipped.
        Settlement status only moves out of pending; any other transition
        aborts the whole update with StorageInconsistency. The snapshot row
        is rewritten only when its counters differ.
        """
        inserted = 0
        updated = 0
        snapshot_written = False
        with self.session_scope() as session:
            if session.get(Wallet, wallet_id) is None:
                raise WalletNotFound(f"Wallet not found: {wallet_id}")

            for new in sorted(new_records, key=lambda r: r.timestamp):
                if _find_record(session, wallet_id, new.txid, new.tx_type) is not None:
                    continue
                session.add(
                    TransactionRecord(
                        wallet_id=wallet_id,
                        txid=new.txid,
                        amount=new.amount,
                        timestamp=new.timestamp,
                        type_name=new.tx_type,
                        is_settled=new.is_settled,
                        raw_tx=new.raw_tx,
                    )
                )
                # Flush so a duplicate later in the same batch is seen.
                session.flush()
                inserted += 1

            for change in status_changes:
                record = _find_record(session, wallet_id, change.txid, change.tx_type)
                if record is None:
                    raise StorageInconsistency(
                        f"Status change for unknown record {change.tx_type.value} {change.txid}"
                    )
                if record.is_settled == change.is_settled:
                    continue
                if not record.is_pending:
                    logger.error(
                        "Refusing settlement regression for %s %s: %r -> %r",
                        record.type_name.value,
                        record.txid,
                        record.is_settled,
                        change.is_settled,
                    )
                    raise StorageInconsistency(
                        f"Settlement status of {record.type_name.value} {record.txid} "
                        f"cannot move from {record.is_settled!r} to {change.is_settled!r}"
                    )
                record.is_settled = change.is_settled
                updated += 1

            if snapshot is not None:
                row = session.get(BalanceSnapshot, wallet_id)
                if row is None:
                    row = BalanceSnapshot(wallet_id=wallet_id)
                    session.add(row)
                if row.last_updated is None or row.counters() != snapshot:
                    row.onchain_confirmed = snapshot.onchain_confirmed
                    row.onchain_pending = snapshot.onchain_pending
                    row.offchain_confirmed = snapshot.offchain_confirmed
                    row.offchain_pending = snapshot.offchain_pending
                    row.last_updated = self._now()
                    snapshot_written = True

        if inserted or updated:
            logger.info(
                "Ledger update for %s: %d inserted, %d status changes", wallet_id, inserted, updated
            )
        return LedgerUpdateResult(inserted=inserted, updated=updated, snapshot_written=snapshot_written)


def _find_record(
    session: Session, wallet_id: str, txid: str, tx_type: TxType
) -> TransactionRecord | None:
    stmt = select(TransactionRecord).where(
        TransactionRecord.wallet_id == wallet_id,
        TransactionRecord.txid == txid,
        TransactionRecord.type_name == tx_type,
    )
    return session.scalars(stmt).first()


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
