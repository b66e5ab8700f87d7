"""kube-migrate: move a database from a Deployment to a StatefulSet without losing data."""

__version__ = "0.1.0"
