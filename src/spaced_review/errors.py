class ReviewSchedulerError(Exception):
    """Base class for errors raised by the review scheduler."""


class ReviewValidationError(ReviewSchedulerError, ValueError):
    """Input rejected before any state was touched.

    範囲外の quality や負の回答数など、呼び出し側の入力不正を表す。
    送出時点で永続化済みの状態は一切変更されていない。
    """


class PersistenceError(ReviewSchedulerError, RuntimeError):
    """A store write failed; the previous stored state is still authoritative.

    呼び出し側は同じ入力で ``complete_review`` を再試行してよい。
    """
