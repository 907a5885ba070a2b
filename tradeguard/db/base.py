"""Declarative base shared by all TradeGuard models."""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
