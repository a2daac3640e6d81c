"""Adapter registry: maps adapter key to a lazy-import class path."""

AVAILABLE_ADAPTERS: dict[str, str] = {
    "fhir-email": "fhirnotify.adapters.email.EmailNotificationAdapter",
}


def import_adapter(dotted_path: str):
    """Import an adapter class from its dotted module path."""
    import importlib

    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    return getattr(module, class_name)
