"""
Deployment lifecycle orchestration.

Plans capability modules, drives OpenTofu in a container, guards each
environment with an advisory lock, and keeps a redacted run history.
"""
