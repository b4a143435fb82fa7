"""
Services layer — data access built on the infrastructure clients.

Sub-packages:
  crud_service     — Postgres / SQLite CRUD, Redis-first table adapter, query cache
  vector_service   — Qdrant vector store with hybrid re-ranking
  cache_service    — semantic (proximity) cache
  tracing_service  — trace records and traced LLM provider calls
"""
