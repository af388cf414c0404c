from __future__ import annotations


class PipelineError(Exception):
    pass


class PreconditionError(PipelineError):
    """Session cannot start: nothing is sent to the inference service."""


class RecordStoreError(PipelineError):
    pass
