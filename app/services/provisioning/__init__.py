"""Provisioning services: preflight, pacing, slots, queue, ledger, orchestrator."""
