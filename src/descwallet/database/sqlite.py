"""
SQLite wallet storage.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

from loguru import logger
from sqlalchemy import Integer, LargeBinary, String, create_engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from descwallet.database.base import Database, TxRecord, UtxoRecord
from descwallet.errors import DatabaseError
from descwallet.models import BlockTime, KeychainKind, OutPoint
from descwallet.wallet.address import Script


class Base(DeclarativeBase):
    pass


class ScriptPubkeyRow(Base):
    __tablename__ = "script_pubkeys"

    keychain: Mapped[str] = mapped_column(String(8), primary_key=True)
    child: Mapped[int] = mapped_column(Integer, primary_key=True)
    script: Mapped[bytes] = mapped_column(LargeBinary, unique=True, index=True)


class LastIndexRow(Base):
    __tablename__ = "last_derivation_indices"

    keychain: Mapped[str] = mapped_column(String(8), primary_key=True)
    value: Mapped[int] = mapped_column(Integer)


class UtxoRow(Base):
    __tablename__ = "utxos"

    txid: Mapped[str] = mapped_column(String(64), primary_key=True)
    vout: Mapped[int] = mapped_column(Integer, primary_key=True)
    value: Mapped[int] = mapped_column(Integer)
    script: Mapped[bytes] = mapped_column(LargeBinary)
    keychain: Mapped[str] = mapped_column(String(8))
    is_spent: Mapped[bool] = mapped_column(default=False)

    def to_record(self) -> UtxoRecord:
        return UtxoRecord(
            OutPoint(self.txid, self.vout),
            self.value,
            Script(self.script),
            KeychainKind(self.keychain),
            self.is_spent,
        )


class TransactionRow(Base):
    __tablename__ = "transactions"

    txid: Mapped[str] = mapped_column(String(64), primary_key=True)
    raw: Mapped[bytes] = mapped_column(LargeBinary)
    received: Mapped[int] = mapped_column(Integer)
    sent: Mapped[int] = mapped_column(Integer)
    fee: Mapped[int | None] = mapped_column(Integer)
    height: Mapped[int | None] = mapped_column(Integer)
    timestamp: Mapped[int | None] = mapped_column(Integer)

    def to_record(self) -> TxRecord:
        confirmation_time = (
            BlockTime(self.height, self.timestamp) if self.height is not None else None
        )
        return TxRecord(self.txid, self.raw, self.received, self.sent, self.fee, confirmation_time)


class SqliteDatabase(Database):
    def __init__(self, path: Path | str):
        self.path = Path(path)
        try:
            # Access is serialized by the owning wallet's lock
            self._engine = create_engine(
                f"sqlite:///{self.path}",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Failed to open database {self.path}: {e}") from e
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        logger.debug(f"Opened sqlite database at {self.path}")

    def _session(self) -> Session:
        return self._sessions()

    def _write(self, *rows: Base) -> None:
        try:
            with self._session() as session, session.begin():
                for row in rows:
                    session.merge(row)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Database error: {e}") from e

    def _get(self, model: type[Base], key: tuple | str):
        try:
            with self._session() as session:
                return session.get(model, key)
        except SQLAlchemyError as e:
            raise DatabaseError(f"Database error: {e}") from e

    def _all(self, statement) -> list:
        try:
            with self._session() as session:
                return list(session.scalars(statement))
        except SQLAlchemyError as e:
            raise DatabaseError(f"Database error: {e}") from e

    def set_script_pubkey(self, script: Script, keychain: KeychainKind, index: int) -> None:
        self._write(ScriptPubkeyRow(keychain=keychain.value, child=index, script=script.raw))

    def get_script_pubkey(self, keychain: KeychainKind, index: int) -> Script | None:
        row = self._get(ScriptPubkeyRow, (keychain.value, index))
        return Script(row.script) if row else None

    def get_path_from_script(self, script: Script) -> tuple[KeychainKind, int] | None:
        rows = self._all(select(ScriptPubkeyRow).where(ScriptPubkeyRow.script == script.raw))
        return (KeychainKind(rows[0].keychain), rows[0].child) if rows else None

    def iter_script_pubkeys(self, keychain: KeychainKind | None = None) -> Iterator[Script]:
        statement = select(ScriptPubkeyRow.script).order_by(ScriptPubkeyRow.child)
        if keychain is not None:
            statement = statement.where(ScriptPubkeyRow.keychain == keychain.value)
        for raw in self._all(statement):
            yield Script(raw)

    def get_last_index(self, keychain: KeychainKind) -> int | None:
        row = self._get(LastIndexRow, keychain.value)
        return row.value if row else None

    def set_last_index(self, keychain: KeychainKind, index: int) -> None:
        self._write(LastIndexRow(keychain=keychain.value, value=index))

    def set_utxo(self, utxo: UtxoRecord) -> None:
        self._write(
            UtxoRow(
                txid=utxo.outpoint.txid,
                vout=utxo.outpoint.vout,
                value=utxo.value,
                script=utxo.script_pubkey.raw,
                keychain=utxo.keychain.value,
                is_spent=utxo.is_spent,
            )
        )

    def get_utxo(self, outpoint: OutPoint) -> UtxoRecord | None:
        row = self._get(UtxoRow, (outpoint.txid, outpoint.vout))
        return row.to_record() if row else None

    def iter_utxos(self) -> Iterator[UtxoRecord]:
        for row in self._all(select(UtxoRow)):
            yield row.to_record()

    def set_tx(self, tx: TxRecord) -> None:
        self._write(
            TransactionRow(
                txid=tx.txid,
                raw=tx.raw,
                received=tx.received,
                sent=tx.sent,
                fee=tx.fee,
                height=tx.confirmation_time.height if tx.confirmation_time else None,
                timestamp=tx.confirmation_time.timestamp if tx.confirmation_time else None,
            )
        )

    def get_tx(self, txid: str) -> TxRecord | None:
        row = self._get(TransactionRow, txid)
        return row.to_record() if row else None

    def iter_txs(self) -> Iterator[TxRecord]:
        for row in self._all(select(TransactionRow)):
            yield row.to_record()

    def del_tx(self, txid: str) -> None:
        try:
            with self._session() as session, session.begin():
                session.execute(delete(UtxoRow).where(UtxoRow.txid == txid))
                session.execute(delete(TransactionRow).where(TransactionRow.txid == txid))
        except SQLAlchemyError as e:
            raise DatabaseError(f"Database error: {e}") from e

    def close(self) -> None:
        self._engine.dispose()
