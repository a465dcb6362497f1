# services/docflow-service/docflow/api/routers/__init__.py
