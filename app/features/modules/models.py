"""
Module tree model.

Modules are owned by the product catalog; the permission engine only reads
the parent/child links and the path segment (key) of each module.
"""
from sqlalchemy import String, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class Module(Base, TimestampMixin):
    """
    A product module or submodule.

    The dotted chain of keys from the root module down to a module forms its
    path, e.g. "accounting.invoices". The root module doubles as the scope of
    every permission beneath it.
    """
    __tablename__ = "modules"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    parent_module_id: Mapped[str | None] = mapped_column(
        String(26),
        ForeignKey("modules.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<Module(id={self.id}, key={self.key!r}, parent={self.parent_module_id})>"
