"""batch-relay: drive long-running remote operations to completion in resumable passes."""

__version__ = "0.1.0"
