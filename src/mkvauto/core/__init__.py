"""Core orchestration and workflow management.

This module contains the event bus, the operator commands and the
application context that wires the disc and encode pipelines together.
"""
