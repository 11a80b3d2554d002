from .router import PROVIDER_TYPES, complete, default_base_url

__all__ = ["PROVIDER_TYPES", "complete", "default_base_url"]
