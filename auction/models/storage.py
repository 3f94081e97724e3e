"""Таблица key/value для персистентного слоя кеша."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from .base import utcnow


class StorageItem(SQLModel, table=True):
    __tablename__ = "storage_items"

    key: str = Field(primary_key=True, max_length=255)
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)


__all__ = ["StorageItem"]
