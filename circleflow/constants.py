"""Shared constants for circleflow."""

WORKFLOW_COMPLETE = "workflow_complete"
WORKFLOW_REJECTED = "workflow_rejected"

UNSUPPORTED_STEP_TYPE = "unsupported step type"

# Request.metadata namespace for integration step outputs
WORKFLOW_RESULTS_KEY = "workflow_results"

DEFAULT_CLIENT_TIMEOUT = 20.0
DEFAULT_N8N_TIMEOUT = 30.0
DEFAULT_N8N_BASE_URL = "http://localhost:5678"
