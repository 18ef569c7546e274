from dbgateway.common.cancellation import CancellationToken


def test_cancel_runs_callbacks_once():
    # Validates single delivery because a second backend cancel could hit the next query.
    # Arrange
    token = CancellationToken()
    calls = []
    token.add_callback(lambda: calls.append("x"))

    # Act
    token.cancel()
    token.cancel()

    # Assert
    assert token.is_cancelled()
    assert calls == ["x"]


def test_callback_added_after_cancel_runs_immediately():
    # Validates late registration because the timeout may fire before the driver call starts.
    # Arrange
    token = CancellationToken()
    token.cancel()
    calls = []

    # Act
    token.add_callback(lambda: calls.append("late"))

    # Assert
    assert calls == ["late"]


def test_removed_callback_is_not_run_and_failures_are_contained():
    # Validates cleanup because finished statements unregister their cancel hook.
    # Arrange
    token = CancellationToken()
    calls = []

    def hook():
        calls.append("hook")

    def broken():
        raise RuntimeError("driver gone")

    token.add_callback(hook)
    token.add_callback(broken)
    token.remove_callback(hook)

    # Act
    token.cancel()

    # Assert
    assert calls == []
    assert token.wait(0) is True
