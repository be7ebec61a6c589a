"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import Numeric, Uuid

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid

# Money columns: 2 decimal places covers every supported currency's minor unit
MoneyType = Numeric(14, 2)

# Unit prices may carry sub-minor-unit precision (e.g. 2928.5 TWD)
UnitPriceType = Numeric(14, 4)

QuantityType = Numeric(12, 3)

# Tax rate as a fraction (0.0500 = 5%)
RateType = Numeric(6, 4)

ExchangeRateType = Numeric(14, 6)
