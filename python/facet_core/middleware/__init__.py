from facet_core.middleware.request_id import RequestIDMiddleware, get_request_id

__all__ = ["RequestIDMiddleware", "get_request_id"]
