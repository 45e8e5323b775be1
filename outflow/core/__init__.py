"""Core infrastructure: config, database, errors."""

from outflow.core.config import (
    Settings,
    EngineConfig,
    ResumerConfig,
    SendingConfig,
    GmailConfig,
    SlackConfig,
    EmailTemplate,
    load_settings,
    load_templates,
    get_template_by_name,
    render_template,
)
from outflow.core.db import (
    init_db,
    insert_lead,
    get_lead_by_email,
    get_lead_by_id,
    get_leads_by_status,
    lead_variables,
    get_pipeline_stats,
)
from outflow.core.errors import (
    OutflowError,
    GraphValidationError,
    GraphIntegrityError,
    NodeExecutionError,
    EmailSendError,
    NotFoundError,
    ConcurrentUpdateError,
)
