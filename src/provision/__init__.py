"""Provisioning engine for declarative topology graphs.

Validates a resource graph, schedules it into dependency waves and
reconciles each resource against the persisted state snapshot through
provider clients, handling consistency lag and managed secrets.
"""
