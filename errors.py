class CompositionError(Exception):
    """Base class for errors raised by the composition engines."""


class TemplateParseError(CompositionError):
    """The template bytes could not be read as a document of the expected kind."""


class UnsupportedFontFamily(CompositionError):
    def __init__(self, family: str) -> None:
        super().__init__(f"Font family '{family}' is not one of the built-in faces.")
        self.family = family


class ConversionUnavailable(CompositionError):
    """No working DOCX -> PDF converter could be used."""


class ContentExtractionError(CompositionError):
    """An uploaded content document could not be read."""


class UnsupportedTemplateType(CompositionError):
    def __init__(self, filename: str) -> None:
        super().__init__(f"Unsupported letterhead template type: {filename}")
        self.filename = filename
