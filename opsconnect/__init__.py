"""OpsConnect: connector components and webhook triggers for operational APIs."""

__version__ = "0.1.0"
