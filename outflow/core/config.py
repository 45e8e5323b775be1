"""Configuration loading and models."""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel


class EngineConfig(BaseModel):
    max_steps_per_run: int = 100


class ResumerConfig(BaseModel):
    poll_interval_seconds: int = 60
    batch_size: int = 100


class SendingConfig(BaseModel):
    max_attempts: int = 3
    retry_delay_seconds: float = 2.0


class GmailConfig(BaseModel):
    from_name: str = "Chris"
    connected_account_id: str = ""  # Composio connected account ID


class SlackConfig(BaseModel):
    webhook_url: str = ""


class Settings(BaseModel):
    engine: EngineConfig = EngineConfig()
    resumer: ResumerConfig = ResumerConfig()
    sending: SendingConfig = SendingConfig()
    gmail: GmailConfig = GmailConfig()
    slack: SlackConfig = SlackConfig()


DEFAULT_CONFIG_PATH = Path("config")

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def load_settings(config_path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from YAML file."""
    settings_file = config_path / "settings.yaml"

    if settings_file.exists():
        with open(settings_file) as f:
            data = yaml.safe_load(f) or {}
        settings = Settings(**data)
    else:
        settings = Settings()

    # Secrets may live in the environment instead of YAML
    if not settings.gmail.connected_account_id:
        env_account_id = os.environ.get("COMPOSIO_CONNECTED_ACCOUNT_ID", "")
        if env_account_id:
            settings.gmail.connected_account_id = env_account_id

    if not settings.slack.webhook_url:
        settings.slack.webhook_url = os.environ.get("SLACK_WEBHOOK_URL", "")

    return settings


def lookup_variable(variables: dict, name: str) -> tuple[bool, Any]:
    """Resolve a dotted name against nested dicts.

    Returns (found, value). ``lead.first_name`` falls back to a flat
    ``first_name`` variable, since lead fields are seeded at the top level.
    """
    current: Any = variables
    for part in name.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            if name.startswith("lead.") and name.count(".") == 1:
                return lookup_variable(variables, name[len("lead."):])
            return False, None
    return True, current


def render_template(template: str, variables: dict) -> str:
    """Render ``{{name}}`` placeholders from variables.

    Missing variables leave the placeholder in place.
    """
    def substitute(match: re.Match) -> str:
        found, value = lookup_variable(variables, match.group(1))
        if not found or value is None:
            return match.group(0)
        return str(value)

    return PLACEHOLDER_PATTERN.sub(substitute, template)


class EmailTemplate(BaseModel):
    """Named email template from templates.md."""
    name: str
    subject: str
    body: str


def load_templates(config_path: Path = DEFAULT_CONFIG_PATH) -> list[EmailTemplate]:
    """Load and parse templates.md into list of EmailTemplate objects."""
    templates_file = config_path / "templates.md"

    if not templates_file.exists():
        return []

    content = templates_file.read_text()

    # Split on frontmatter delimiters (---)
    sections = re.split(r'^---\s*$', content, flags=re.MULTILINE)

    templates = []
    # Process pairs of (frontmatter, body)
    i = 1
    while i < len(sections) - 1:
        frontmatter = sections[i].strip()
        body = sections[i + 1].strip()
        i += 2

        if not frontmatter:
            continue

        meta = yaml.safe_load(frontmatter)
        if not isinstance(meta, dict) or "template" not in meta:
            continue

        # Subject is the first "subject:" line of the body
        lines = body.split('\n')
        subject = meta.get("subject", "")
        body_start = 0
        for idx, line in enumerate(lines):
            if line.startswith('subject:'):
                subject = line.replace('subject:', '', 1).strip()
                body_start = idx + 1
                break

        templates.append(EmailTemplate(
            name=str(meta["template"]),
            subject=subject,
            body='\n'.join(lines[body_start:]).strip(),
        ))

    return templates


def get_template_by_name(config_path: Path, name: str) -> Optional[EmailTemplate]:
    """Get a specific email template by name from templates.md."""
    for t in load_templates(config_path):
        if t.name == name:
            return t
    return None
