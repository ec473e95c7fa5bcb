"""
Pipeline definitions: owned by the definition CRUD service, read-only to the engine.

ApiItem is the stored call template a step points at. Header, query-parameter
and extraction maps are kept as raw JSON text, exactly as authored, so that a
malformed map is detected at execution time.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from apiflow.database import Base


class ApiItem(Base):
    __tablename__ = "api_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    method: Mapped[str] = mapped_column(String(10), default="GET")  # GET, POST, PUT, DELETE, PATCH
    url: Mapped[str] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_params: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_headers: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    folder_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class Pipeline(Base):
    __tablename__ = "pipelines"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    folder_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    steps: Mapped[list["PipelineStep"]] = relationship(
        back_populates="pipeline", order_by="PipelineStep.step_order",
    )


class PipelineStep(Base):
    __tablename__ = "pipeline_steps"

    id: Mapped[int] = mapped_column(primary_key=True)
    pipeline_id: Mapped[int] = mapped_column(ForeignKey("pipelines.id"), index=True)
    api_item_id: Mapped[int] = mapped_column(ForeignKey("api_items.id"))
    step_order: Mapped[int] = mapped_column(Integer)
    step_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_extractions: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Reserved: stored for the editor, never evaluated by the engine
    data_injections: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_condition: Mapped[str | None] = mapped_column(Text, nullable=True)
    delay_after: Mapped[int | None] = mapped_column(Integer, nullable=True)  # milliseconds
    is_skip: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    pipeline: Mapped[Pipeline] = relationship(back_populates="steps")
    api_item: Mapped[ApiItem] = relationship()
