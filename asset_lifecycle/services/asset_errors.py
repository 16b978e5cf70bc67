from __future__ import annotations


class AssetLifecycleError(RuntimeError):
    status_code = 500


class ValidationError(AssetLifecycleError):
    status_code = 400


class ReauthenticationError(AssetLifecycleError):
    status_code = 400


class AuthorizationError(AssetLifecycleError):
    status_code = 403


class NotFoundError(AssetLifecycleError):
    status_code = 404


class PersistenceError(AssetLifecycleError):
    status_code = 500
