from apiflow.models.pipeline import ApiItem, Pipeline, PipelineStep  # noqa: F401
from apiflow.models.execution import (  # noqa: F401
    PipelineExecution, StepExecution, RunStatus, StepStatus,
)
