# services/docflow-service/docflow/seeds/__init__.py
