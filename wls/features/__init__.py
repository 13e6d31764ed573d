from .metrics import record_extraction, record_request, render_metrics

__all__ = ["record_extraction", "record_request", "render_metrics"]
