"""pipewright — declarative pipeline and provisioning orchestrator."""

__version__ = "0.1.0"
