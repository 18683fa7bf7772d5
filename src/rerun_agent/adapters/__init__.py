"""
Adapters - status oracles, action triggers and sink contracts.

Components:
- base: StatusOracle / ActionTrigger / StateSink protocols
- scripted: deterministic adapters for simulation and tests
- azure_devops: Build REST API oracle and rerun trigger (httpx)
"""

from rerun_agent.adapters.base import (
    ActionTrigger,
    StateSink,
    StatusOracle,
)
from rerun_agent.adapters.scripted import (
    ScriptedActionTrigger,
    ScriptedStatusOracle,
    parse_statuses,
)
from rerun_agent.adapters.azure_devops import (
    AzureDevOpsClient,
    AzureDevOpsError,
    AzureDevOpsRetryTrigger,
    AzureDevOpsStatusOracle,
    classify_build,
)

__all__ = [
    # Contracts
    "ActionTrigger",
    "StateSink",
    "StatusOracle",
    # Scripted
    "ScriptedActionTrigger",
    "ScriptedStatusOracle",
    "parse_statuses",
    # Azure DevOps
    "AzureDevOpsClient",
    "AzureDevOpsError",
    "AzureDevOpsRetryTrigger",
    "AzureDevOpsStatusOracle",
    "classify_build",
]
