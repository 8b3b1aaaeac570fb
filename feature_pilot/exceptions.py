"""Custom exception hierarchy for feature-pilot.

Exceptions are split between hard failures, which abort the current
operation and surface to the caller, and soft failures, which the workflow
core catches and converts into a workflow action (escalating a step, or
letting a gate proceed) so that a session never deadlocks.

Exception Hierarchy:
    FeaturePilotError (base)
    ├── ConfigurationError
    ├── ValidationError
    ├── NotFoundError
    ├── StateConflictError
    ├── SpawnError
    ├── ExternalCommandError
    ├── StepRetryExhausted          (soft)
    └── ValidationAttemptsExhausted (soft)

Example Usage:
    >>> from feature_pilot.exceptions import StateConflictError
    >>> try:
    ...     await repository.transition_stage(project_id, feature_id, 4)
    ... except StateConflictError as e:
    ...     log.warning("transition_rejected", error=e.message)
"""


class FeaturePilotError(Exception):
    """Base exception for all feature-pilot errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(FeaturePilotError):
    """Configuration file is missing, unreadable or invalid."""

    pass


class ValidationError(FeaturePilotError):
    """Malformed caller input or a persisted document that fails its schema.

    Examples:
        - Answer submitted for a question id that has no options
        - session.json no longer matches the Session model
    """

    pass


class NotFoundError(FeaturePilotError):
    """A session, plan or question does not exist.

    Attributes:
        resource: Kind of resource that was looked up (e.g. "session")
        identifier: Identifier that was not found
    """

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class StateConflictError(FeaturePilotError):
    """Illegal stage transition or stale edit version.

    The state the request targeted is left untouched when this is raised.

    Attributes:
        current: Current stage (or edit version) of the session
        target: Requested stage (or the version the caller expected)
    """

    def __init__(self, message: str, current: int | None = None, target: int | None = None) -> None:
        self.current = current
        self.target = target

        full_message = message
        if current is not None and target is not None:
            full_message = f"{message} ({current} -> {target})"

        super().__init__(full_message)
        self.message = message


StateConflict = StateConflictError


class SpawnError(FeaturePilotError):
    """The external agent could not be invoked or exited abnormally.

    Attributes:
        stage: Stage number the invocation was made for
    """

    def __init__(self, message: str, stage: int | None = None) -> None:
        self.stage = stage
        full_message = message if stage is None else f"{message} (stage {stage})"
        super().__init__(full_message)
        self.message = message


class ExternalCommandError(FeaturePilotError):
    """A version-control command run before or during PR creation failed.

    Attributes:
        command: The command that failed, as a single string
        returncode: Process exit code, if the process ran at all
        stderr: Captured standard error output
    """

    def __init__(
        self,
        message: str,
        command: str | None = None,
        returncode: int | None = None,
        stderr: str | None = None,
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr

        full_message = message
        if command:
            full_message = f"{message} (command: {command}, exit code: {returncode})"

        super().__init__(full_message)
        self.message = message


class StepRetryExhausted(FeaturePilotError):
    """A plan step failed every allowed attempt without reporting a blocker.

    Soft failure: the step is escalated to ``needs_review`` and the session
    returns to Planning with a description of the failure.

    Attributes:
        step_id: The step that could not be completed
        attempts: Number of agent invocations made for the step
        last_output: Raw output of the final attempt
    """

    def __init__(self, step_id: str, attempts: int, last_output: str = "") -> None:
        self.step_id = step_id
        self.attempts = attempts
        self.last_output = last_output
        super().__init__(f"Step {step_id} was not completed after {attempts} attempts")


class ValidationAttemptsExhausted(FeaturePilotError):
    """The Planning completeness gate kept failing past its attempt cap.

    Soft failure: the 2 -> 3 transition proceeds anyway and a warning is
    logged.

    Attributes:
        attempts: Number of validation attempts made
    """

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Plan still incomplete after {attempts} validation attempts")
