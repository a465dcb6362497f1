# services/docflow-service/docflow/__init__.py
__version__ = "0.1.0"
