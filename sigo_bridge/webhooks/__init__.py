"""Inbound hub webhooks: signature check, payload validation and the invoicing pipeline."""
