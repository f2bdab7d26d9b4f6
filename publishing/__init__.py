"""
Multipost publishing package.

Keep this module lightweight: only the error primitives are exported at
package import time. Other modules are imported directly
(e.g. `from publishing.orchestrator import Orchestrator`).
"""

from .errors import PublishError, ErrorCode, RetryableJobError, FatalJobError

__all__ = ["PublishError", "ErrorCode", "RetryableJobError", "FatalJobError"]
