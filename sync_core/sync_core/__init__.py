"""Tenant lifecycle synchronization core: signatures, state machine and store."""
