from app.sdk.client import WhopSaaSClient, WhopSaaSError

__all__ = ["WhopSaaSClient", "WhopSaaSError"]
