class JudgeError(Exception):
    """Base class for faults raised inside the judge."""


class UnsupportedLanguageError(JudgeError):
    def __init__(self, language: str):
        super().__init__(f"Unsupported language: {language}")
        self.language = language


class InvalidTransitionError(JudgeError):
    pass


class FixtureImportError(JudgeError):
    pass
