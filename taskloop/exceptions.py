"""Custom exceptions for Taskloop."""


class TaskloopError(Exception):
    """Base exception for Taskloop."""

    pass


class ConfigurationError(TaskloopError):
    """Configuration-related errors."""

    pass


class DisposedError(TaskloopError):
    """Operation attempted on a disposed agent adapter."""

    def __init__(self, message: str = "Adapter has been disposed and cannot start new tasks"):
        super().__init__(message)


class TaskAlreadyRunningError(TaskloopError):
    """start_task called while another task is running on the same adapter."""

    def __init__(self, task_id: str | None):
        super().__init__(f"Task already running: {task_id}")
        self.task_id = task_id


class ProviderError(TaskloopError):
    """Model provider errors."""

    pass


class UnsupportedProviderError(ProviderError):
    """No model handle could be created for the provider."""

    def __init__(self, provider: str):
        super().__init__(
            f"Unsupported provider: {provider}. Supported: openai, anthropic, google, groq, "
            "deepseek, ollama, openrouter, lmstudio, etc."
        )
        self.provider = provider


class LLMError(TaskloopError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(LLMAPIError):
    """Provider rejected the request with a rate limit."""

    def __init__(self, message: str, status_code: int | None = 429):
        super().__init__(message, status_code=status_code)


class StreamError(LLMError):
    """Failure while iterating a model stream."""

    pass


class ToolError(TaskloopError):
    """Tool errors."""

    pass


class ToolConnectionError(ToolError):
    """A tool provider failed to connect or list its tools."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"Tool provider '{provider}' failed: {message}")
        self.provider = provider


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in the tool set."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolCloseError(ToolError):
    """Closing a tool provider connection failed. Logged, never raised to callers."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"Closing tool provider '{provider}' failed: {message}")
        self.provider = provider
