"""Outreach collaborators: lead import and email sending."""

from outflow.outreach.importer import import_leads, create_example_excel
from outflow.outreach.sender import ComposioEmailSender
