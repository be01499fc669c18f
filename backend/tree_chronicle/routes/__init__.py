# Routes package init
"""
Tree Chronicle Backend — API Routes Package
=============================================

Route Inventory:
    - projects.py: GET/POST /api/projects, PATCH/DELETE /api/projects/{id}
    - photos.py:   GET/POST /api/photos, PATCH/DELETE /api/photos/{id},
                   GET /uploads/{filename}
    - backup.py:   GET /api/backup/export, POST /api/backup/import
    - health.py:   GET /health

Design Principle:
    Routes should be THIN. They extract request data, call a service, and
    shape the response. Business logic belongs in services.
"""
