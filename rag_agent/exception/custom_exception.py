import sys
import traceback
from typing import Optional


class RagAgentException(Exception):
    """
    Base exception for the project.

    `error_details` may be the wrapped exception, the `sys` module (inside an
    except block) or None. When a traceback is available the file name and
    line number of the failure are captured for logging.
    """

    def __init__(self, error_message, error_details: Optional[object] = None):
        self.error_message = str(error_message)
        self.file_name = "<unknown>"
        self.lineno = -1
        self.traceback_str = ""

        exc_type, exc_value, exc_tb = self._resolve(error_details)
        if exc_tb is not None:
            last = exc_tb
            while last.tb_next is not None:
                last = last.tb_next
            self.file_name = last.tb_frame.f_code.co_filename
            self.lineno = last.tb_lineno
            self.traceback_str = "".join(
                traceback.format_exception(exc_type, exc_value, exc_tb)
            )

        super().__init__(self.error_message)

    @staticmethod
    def _resolve(error_details):
        if error_details is None:
            return None, None, None
        if isinstance(error_details, BaseException):
            return type(error_details), error_details, error_details.__traceback__
        if error_details is sys:
            return sys.exc_info()
        return None, None, None

    def __str__(self) -> str:
        if self.lineno < 0:
            return self.error_message
        return f"Error in [{self.file_name}] at line [{self.lineno}] | Message: {self.error_message}"


class UploadValidationError(RagAgentException):
    """Rejected upload; mapped to HTTP 400 before any state is created."""


class SegmenterConfigError(RagAgentException):
    pass


class FatalPipelineError(RagAgentException):
    """Pipeline failure that must not be retried."""


class UnsupportedFormatError(FatalPipelineError):
    pass


class ConsistencyError(FatalPipelineError):
    pass


class VectorizationError(FatalPipelineError):
    pass


class ToolExecutionError(RagAgentException):
    pass
