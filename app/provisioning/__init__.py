"""Provisioning domain: job, slot, queue and failure types."""
