"""Core modules for kube-migrate."""
