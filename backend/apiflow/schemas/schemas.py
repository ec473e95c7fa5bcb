"""
Pydantic schemas for API request/response models.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


# ── Pipeline executions ──

class PipelineExecutionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pipeline_id: int
    pipeline_name: str | None = None
    status: str
    total_steps: int
    completed_steps: int
    successful_steps: int
    failed_steps: int
    skipped_steps: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    session_cookies: str | None = None
    cancel_requested: bool = False


class StepExecutionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pipeline_step_id: int | None = None
    step_order: int
    step_name: str | None = None
    step_description: str | None = None
    status: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    http_status: int | None = None
    response_time: float | None = None
    error_message: str | None = None
    request_data: dict | None = None
    response_data: str | None = None
    extracted_data: dict | None = None


class ExecuteResponse(BaseModel):
    execution: PipelineExecutionOut
    dispatch: str
    job_id: str | None = None


# ── Queue jobs ──

class JobStatusResponse(BaseModel):
    job_id: str
    run_id: int | None = None
    status: str
    run_status: str | None = None
    enqueued_at: str = ""
    started_at: str = ""
    completed_at: str = ""
    error: str = ""
