"""
DataSync

Reconciles a local feature layer with a remote SQL Server table: stages
the local snapshot, runs the server-side compare procedure, summarizes the
classified differences for review and applies them through the update
procedure.
"""

__version__ = "1.0.0"
