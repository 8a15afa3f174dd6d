class InboxSyncError(Exception):

    pass


class TransientFetchError(InboxSyncError):
    """A fetch from the message log failed or timed out; the next poll tick retries."""

    def __init__(self, scope: str, cause: BaseException | None = None) -> None:
        self.scope = scope
        self.cause = cause
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(f"{scope} fetch failed{detail}")


class SubscriptionDropped(InboxSyncError):
    """The push subscription stopped delivering (transport error or missed heartbeats)."""

    pass


class StaleSelection(InboxSyncError):
    """An update targets a conversation key that is no longer selected."""

    def __init__(self, expected: str | None, got: str) -> None:
        self.expected = expected
        self.got = got
        super().__init__(f"update for {got!r} while tracking {expected!r}")
