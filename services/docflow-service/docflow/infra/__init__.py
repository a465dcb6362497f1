# services/docflow-service/docflow/infra/__init__.py
