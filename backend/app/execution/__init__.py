from app.execution.runner import ExecutionRunner, timeout_message
from app.execution.toolchains import DEFAULT_TOOLCHAINS, PreparedJob, Toolchain

__all__ = [
    "DEFAULT_TOOLCHAINS",
    "ExecutionRunner",
    "PreparedJob",
    "Toolchain",
    "timeout_message",
]
