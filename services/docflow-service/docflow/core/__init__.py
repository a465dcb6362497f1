# services/docflow-service/docflow/core/__init__.py
