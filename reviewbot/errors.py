"""Exceptions raised by the review pipeline.

Only conditions a caller can act on are exceptions. Outcomes such as an
ignored webhook, a duplicate review or a pull request without analyzable
files are reported through the result types of the services instead.
"""


class ReviewBotError(Exception):
    """Base class for all review bot errors."""


class SignatureInvalid(ReviewBotError):
    """Webhook signature missing or not matching the shared secret."""


class MalformedPayload(ReviewBotError):
    """Webhook body is not a usable JSON event."""


class RepositoryNotFound(ReviewBotError):
    """Repository is not connected."""


class PullRequestNotFound(ReviewBotError):
    """Source control returned 404 for a pull request."""


class ReviewNotFound(ReviewBotError):
    """No review with the given id."""


class IssueNotFound(ReviewBotError):
    """No issue with the given id."""


class AnalysisFailure(ReviewBotError):
    """The analysis collaborator produced no usable response."""


class PersistenceFailure(ReviewBotError):
    """A review result could not be committed; the transaction was rolled back."""
