from btcc_fantasy.client.api import ApiClient

__all__ = ["ApiClient"]
