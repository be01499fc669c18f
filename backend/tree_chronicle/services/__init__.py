# Services package init
"""
Tree Chronicle Backend — Services Layer
=========================================

Service Inventory:
    - FileService:    photo file validation, naming, storage and cleanup
    - ProjectService: project/photo CRUD against a gated session
    - archive:        backup ZIP format (build, inspect, stage)
    - BackupService:  export/import protocol around the store handle
"""
