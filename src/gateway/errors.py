"""Client-facing error taxonomy.

Every subclass maps to one HTTP status and is rendered as the
OpenAI-style envelope ``{"error": {"message": ...}}``.
"""


class GatewayError(Exception):
    status_code: int = 500
    default_message: str = "An internal server error occurred."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_envelope(self) -> dict:
        return {"error": {"message": self.message}}


class AuthError(GatewayError):
    status_code = 401
    default_message = "Invalid API key or associated API configuration not found."


class BadRequest(GatewayError):
    status_code = 400
    default_message = "Invalid request body."


class ModelNotSupported(GatewayError):
    status_code = 400

    def __init__(self, model: str, supported_models: list[str]):
        self.model = model
        self.supported_models = supported_models
        listed = ", ".join(supported_models) if supported_models else "none"
        super().__init__(f"Model '{model}' is not supported. Supported models: {listed}")


class BackendInactive(GatewayError):
    status_code = 403
    default_message = "The API endpoint is currently inactive."


class ModelNotFound(GatewayError):
    status_code = 404

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"The model '{model}' does not exist")


class ForwardError(GatewayError):
    """Upstream could not be reached or timed out. Detail stays in the logs."""

    status_code = 500
    default_message = "Failed to forward request to API server."


class InternalError(GatewayError):
    status_code = 500
