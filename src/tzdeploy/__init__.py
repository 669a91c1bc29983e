"""tzdeploy - deployment lifecycle orchestration for scaffolded projects."""

__version__ = "0.4.0"
