from sqlalchemy import JSON, Boolean, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from hologen.models.base import Base, TimestampMixin


class Artifact(Base, TimestampMixin):
    """Durable record of one finished pipeline output.

    The primary key is derived from (owner_id, source_location_key), so the
    table can never hold two rows for the same logical output.
    """

    __tablename__ = "persisted_artifacts"
    __table_args__ = (
        UniqueConstraint("owner_id", "source_location_key", name="uq_artifact_owner_source"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    source_location_key: Mapped[str] = mapped_column(Text, nullable=False)

    # Where the bytes live
    durable_url: Mapped[str] = mapped_column(Text, nullable=False)
    provider_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    storage_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    degraded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Media
    media_kind: Mapped[str] = mapped_column(String(20), default="video")  # video, image
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Descriptive metadata supplied by the caller
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    mode: Mapped[str | None] = mapped_column(String(50), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    style: Mapped[str | None] = mapped_column(String(100), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    extra: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<Artifact {self.id} owner={self.owner_id}>"
