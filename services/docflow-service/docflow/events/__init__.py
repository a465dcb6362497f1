# services/docflow-service/docflow/events/__init__.py
