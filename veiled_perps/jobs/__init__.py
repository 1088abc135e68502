"""Job layer package for computation orchestration and position workflows."""

from .computation_definitions import ComputationDefinitionRegistrar
from .computation_orchestrator import ComputationOrchestrator, OrchestratorConfig, job_generate_computation_offset
from .interfaces import LedgerProgramPort
from .position_client import PrivatePositionClient, client_generate_output_nonce

__all__ = [
	"ComputationDefinitionRegistrar",
	"ComputationOrchestrator",
	"LedgerProgramPort",
	"OrchestratorConfig",
	"PrivatePositionClient",
	"client_generate_output_nonce",
	"job_generate_computation_offset",
]
