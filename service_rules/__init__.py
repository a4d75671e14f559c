"""
Rules orchestration service: selector resolution, rule caching and
versioning, and resilient rule execution.
"""
