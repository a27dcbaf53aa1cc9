from .bootstrap import BootstrapReport, RecorderBootstrap, RecorderEnv, main

__all__ = ["BootstrapReport", "RecorderBootstrap", "RecorderEnv", "main"]
