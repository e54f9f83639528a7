from .response import json_paginated, json_success, pagination_meta

__all__ = ["json_paginated", "json_success", "pagination_meta"]
