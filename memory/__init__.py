"""
Memory Module

Tenant-scoped knowledge graph: entities, relations and observations.

- validation: limits, allow-lists, metadata sanitizing
- store: tenant-scoped data access (GraphStore)
- service: validated DTO operations (MemoryService)
- routes: API endpoints
"""
