"""Kernel layer: command filtering, sandbox provisioning and pseudo-terminals."""
