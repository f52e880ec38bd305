"""Taskfeed command line interface."""
