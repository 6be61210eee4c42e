"""
Backup module for pgbackups.

This module handles the core backup functionality including:
- Credential discovery and dumps from database containers
- Compression
- Storage in S3
- Pipeline and run orchestration
- Tiered retention policy enforcement
"""

from .executor import BackupPipeline, PipelineResult, PipelineState
from .coordinator import RunCoordinator, RunSummary, create_coordinator
from .sources import DockerPostgresSource, Credentials
from .compression import compress_file
from .storage import S3Storage
from .retention import RetentionManager, classify

__all__ = [
    'BackupPipeline',
    'PipelineResult',
    'PipelineState',
    'RunCoordinator',
    'RunSummary',
    'create_coordinator',
    'DockerPostgresSource',
    'Credentials',
    'compress_file',
    'S3Storage',
    'RetentionManager',
    'classify'
]
