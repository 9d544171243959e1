"""Daytona: sandboxed code execution."""

import time
from typing import Callable, List, Optional

from opsconnect.core.base import Component, Integration
from opsconnect.core.registry import IntegrationRegistry
from opsconnect.integrations.daytona.execute_code import ExecuteCode


@IntegrationRegistry.register_global
class Daytona(Integration):
    name = "daytona"

    def __init__(
        self,
        poll_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._components: List[Component] = [ExecuteCode(poll_interval=poll_interval, clock=clock)]

    def components(self) -> List[Component]:
        return self._components


__all__ = ["Daytona", "ExecuteCode"]
