"""
backend — FastAPI application package.

Routers: api/health.py, api/documents.py, api/search.py, api/chat.py
Schemas: schemas/response.py
Services: services.py (store, repository, provider singletons)
Entry point: main.py → run with `uvicorn backend.main:app --reload`
"""
