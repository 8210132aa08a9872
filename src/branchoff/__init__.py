"""branchoff — ephemeral per-branch deployments driven by GitHub webhooks."""

__version__ = "0.1.0"
