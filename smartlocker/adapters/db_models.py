from typing import Any

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

class Base(DeclarativeBase): pass

class DocumentRow(Base):
    """Un documento del store por fila: "system_control/locker_1", "parcels/<id>", ..."""
    __tablename__ = "documents"

    path: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # para compare-and-set
