# services/docflow-service/docflow/api/__init__.py
