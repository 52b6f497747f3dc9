"""AumOS compliance orchestrator.

Workflow execution, continuous compliance monitoring, single-purpose
automation and integrated risk scoring for the AumOS GRC platform.
"""

__version__ = "0.1.0"
