from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from ..params import ConfigStore


@runtime_checkable
class ResourceStager(Protocol):
    """Retrieves the files a step tool needs into the working directory."""

    def setup(self, step_tool_name: str, mgr_params: ConfigStore, job_params: Any) -> None:
        ...

    def get_resources(self) -> bool:
        ...


@runtime_checkable
class ToolRunner(Protocol):
    """Runs the analysis program of a step tool."""

    def setup(self, step_tool_name: str, mgr_params: ConfigStore, job_params: Any) -> None:
        ...

    def run_tool(self) -> bool:
        ...
