"""A Kubernetes operator that installs chart releases onto a fleet of
clusters and reports on their capacity.
"""
