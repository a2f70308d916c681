"""Shared utilities for the tasker package."""
