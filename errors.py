"""Exceptions raised by the academic results pipeline."""


class PipelineError(Exception):
    """Base class for every error the pipeline raises on purpose."""


class PermissionDenied(PipelineError):
    def __init__(self, token):
        self.token = token
        super().__init__(f"Permission '{token}' is required for this action.")


class RecordNotFound(PipelineError):
    def __init__(self, collection, key):
        self.collection = collection
        self.key = key
        super().__init__(f"No {collection} record found for {key}.")


class InvalidTransition(PipelineError):
    def __init__(self, assignment_id, state, action):
        self.assignment_id = assignment_id
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} assignment {assignment_id} while it is {state}.")


class StaleState(PipelineError):
    """The assignment changed between the read and the conditional write."""

    def __init__(self, assignment_id):
        self.assignment_id = assignment_id
        super().__init__(f"Assignment {assignment_id} was changed by someone else. Reload and retry.")


class AssignmentLocked(PipelineError):
    def __init__(self, class_id, subject_name, term_id):
        self.class_id = class_id
        self.subject_name = subject_name
        self.term_id = term_id
        super().__init__(
            f"Scores for {subject_name} (class {class_id}, term {term_id}) are locked."
        )


class ScoreValidationError(PipelineError):
    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__('; '.join(self.errors) or 'Invalid scores.')


class GradingConfigError(PipelineError):
    """A grade could not be derived because of grading configuration."""


class NoGradingScheme(GradingConfigError):
    def __init__(self, class_id):
        self.class_id = class_id
        super().__init__(f"No grading scheme assigned to class {class_id} and no school default.")


class NoMatchingBand(GradingConfigError):
    def __init__(self, total, scheme_name=''):
        self.total = total
        self.scheme_name = scheme_name
        label = f" in scheme '{scheme_name}'" if scheme_name else ''
        super().__init__(f"No grading band covers {total:g}{label}.")


class InvalidGradingScheme(GradingConfigError):
    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__('; '.join(self.errors))
