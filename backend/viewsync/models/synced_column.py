from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from viewsync.pg_database import Base


class SyncedColumn(Base):
    """
    One column of a synced table's schema history.

    Columns that disappear upstream are never dropped: the row keeps
    ``removed_in_version`` and the physical column stays in the table.
    """

    __tablename__ = "synced_columns"
    __table_args__ = (
        # At most one live row per column name
        Index(
            "uq_synced_columns_live_name",
            "synced_view_id",
            "column_name",
            unique=True,
            postgresql_where=text("removed_in_version IS NULL"),
            sqlite_where=text("removed_in_version IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    synced_view_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("synced_views.id", ondelete="CASCADE"), nullable=False, index=True
    )
    column_name: Mapped[str] = mapped_column(String(128), nullable=False)
    source_type: Mapped[str] = mapped_column(String(128), nullable=False)
    dest_type: Mapped[str] = mapped_column(String(64), nullable=False)
    is_nullable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    ordinal_position: Mapped[int] = mapped_column(Integer, nullable=False)
    added_in_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    removed_in_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
