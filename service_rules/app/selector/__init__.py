"""Selector validation and execution plan resolution."""
