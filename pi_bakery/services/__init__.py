"""Collaborator services: boot copy backend and NFS exports."""
