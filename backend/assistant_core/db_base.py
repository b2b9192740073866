"""
Declarative base shared by every ORM model in assistant_core.

Import models before calling Base.metadata.create_all() so their tables
are registered.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
