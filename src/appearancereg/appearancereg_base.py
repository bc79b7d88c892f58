"""Base class for AppearanceReg providing standardized logging settings.

All metric components, collaborators and drivers inherit AppearanceRegBase so
that they share one logger called "AppearanceReg". Each message is prefixed
with the emitting class name, and output can be restricted to a subset of
classes.

Example:
    >>> import logging
    >>> from appearancereg.appearancereg_base import AppearanceRegBase
    >>>
    >>> class MyComponent(AppearanceRegBase):
    ...     def __init__(self):
    ...         super().__init__(class_name="MyComponent", log_level=logging.INFO)
    ...
    ...     def run(self):
    ...         self.log_info("Evaluating %d samples", 100)
    >>>
    >>> AppearanceRegBase.set_log_classes(["MyComponent"])
    >>> AppearanceRegBase.set_log_all_classes()
"""

import logging

LOGGER_NAME = "AppearanceReg"


class ClassNameFilter(logging.Filter):
    """Filter to show logs only from specific class names.

    When enabled, only log messages from classes in the allowed list will be shown.
    """

    def __init__(self):
        super().__init__()
        self.enabled = False
        self.allowed_classes = set()

    def filter(self, record):
        """Filter log records based on class name."""
        if not self.enabled:
            return True

        if hasattr(record, 'class_name'):
            return record.class_name in self.allowed_classes

        return True


class AppearanceRegBase:
    """Base class providing standardized logging.

    Class Attributes:
        _shared_logger (logging.Logger): Shared logger for all AppearanceReg classes
        _class_filter (ClassNameFilter): Filter for controlling which classes show logs
        _logger_initialized (bool): Whether the shared logger has been set up

    Instance Attributes:
        class_name (str): Name of the class for log message prefixing
        log_level (int): Current logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    _shared_logger = None
    _class_filter = None
    _logger_initialized = False

    def __init__(
        self,
        class_name: str | None = None,
        log_level: int | str = logging.INFO,
        log_to_file: str | None = None,
    ):
        """Initialize the base class with logging configuration.

        Args:
            class_name: Name for the class (used in log messages). If None, uses
                the class name. Default: None
            log_level: Logging level, either an integer (logging.DEBUG, ...) or
                a string ('DEBUG', 'INFO', ...). Default: logging.INFO
            log_to_file: Optional file path to write logs to in addition to
                console output. Only honoured by the first instance created.
                Default: None
        """
        if class_name is None:
            class_name = self.__class__.__name__
        self.class_name = class_name

        if not AppearanceRegBase._logger_initialized:
            AppearanceRegBase._initialize_shared_logger(log_level, log_to_file)

        self.logger = AppearanceRegBase._shared_logger

        if isinstance(log_level, str):
            log_level = getattr(logging, log_level.upper())

        self.log_level = log_level

    @classmethod
    def _initialize_shared_logger(cls, log_level, log_to_file=None):
        """Initialize the shared logger (called once)."""
        if cls._logger_initialized:
            return

        cls._shared_logger = logging.getLogger(LOGGER_NAME)

        if isinstance(log_level, str):
            log_level = getattr(logging, log_level.upper())

        cls._shared_logger.setLevel(log_level)
        cls._shared_logger.handlers.clear()

        cls._class_filter = ClassNameFilter()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.addFilter(cls._class_filter)

        formatter = logging.Formatter(
            '%(asctime)s %(levelname)s %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        )
        console_handler.setFormatter(formatter)
        cls._shared_logger.addHandler(console_handler)

        if log_to_file is not None:
            file_handler = logging.FileHandler(log_to_file)
            file_handler.setLevel(log_level)
            file_handler.addFilter(cls._class_filter)
            file_handler.setFormatter(formatter)
            cls._shared_logger.addHandler(file_handler)

        # Prevent duplicate messages through the root logger
        cls._shared_logger.propagate = False

        cls._logger_initialized = True

    @classmethod
    def set_log_level(cls, log_level: int | str) -> None:
        """Set the logging level for all AppearanceReg classes.

        Args:
            log_level: Logging level as an integer or a level name.
        """
        if isinstance(log_level, str):
            log_level = getattr(logging, log_level.upper())

        if cls._shared_logger is not None:
            cls._shared_logger.setLevel(log_level)
            for handler in cls._shared_logger.handlers:
                handler.setLevel(log_level)

    @classmethod
    def set_log_classes(cls, class_names: list[str]) -> None:
        """Only show log output from the listed classes.

        Args:
            class_names: List of class names to show logs from.
                Example: ["ActiveRegistrationModelMetric", "CorrespondenceMapper"]
        """
        if cls._class_filter is not None:
            cls._class_filter.enabled = True
            cls._class_filter.allowed_classes = set(class_names)

    @classmethod
    def set_log_all_classes(cls) -> None:
        """Enable logging output from all AppearanceReg classes."""
        if cls._class_filter is not None:
            cls._class_filter.enabled = False
            cls._class_filter.allowed_classes.clear()

    @classmethod
    def get_log_classes(cls) -> list[str]:
        """Get the list of classes currently showing logs.

        Returns:
            Sorted list of allowed class names. Empty if the filter is disabled.
        """
        if cls._class_filter is not None and cls._class_filter.enabled:
            return sorted(cls._class_filter.allowed_classes)
        return []

    def log_debug(self, message: str, *args) -> None:
        """Log a debug message with optional %-style formatting."""
        self._log(logging.DEBUG, message, *args)

    def log_info(self, message: str, *args) -> None:
        """Log an info message with optional %-style formatting."""
        self._log(logging.INFO, message, *args)

    def log_warning(self, message: str, *args) -> None:
        """Log a warning message with optional %-style formatting."""
        self._log(logging.WARNING, message, *args)

    def log_error(self, message: str, *args) -> None:
        """Log an error message with optional %-style formatting."""
        self._log(logging.ERROR, message, *args)

    def log_critical(self, message: str, *args) -> None:
        """Log a critical message with optional %-style formatting."""
        self._log(logging.CRITICAL, message, *args)

    def _log(self, level: int, message: str, *args) -> None:
        """Log with the class name attached and lazy %-style formatting.

        Args:
            level: Logging level
            message: Message to log (can contain %-style placeholders)
            *args: Arguments for %-style string formatting
        """
        formatted_message = f"{self.class_name} {message}"

        if self.logger.isEnabledFor(level):
            record = self.logger.makeRecord(
                self.logger.name,
                level,
                "(unknown file)",
                0,
                formatted_message,
                args,
                None,
            )
            record.class_name = self.class_name
            self.logger.handle(record)

    def log_section(self, title: str, *args, width: int = 70, char: str = '=') -> None:
        """Log a formatted section header.

        Args:
            title: The section title (can contain %-style placeholders)
            *args: Arguments for %-style string formatting of title
            width: Total width of the header line. Default: 70
            char: Character to use for the header line. Default: '='
        """
        separator = char * width
        self.log_info(separator)
        self.log_info(title, *args)
        self.log_info(separator)

    def log_progress(self, current: int, total: int, prefix: str = 'Progress') -> None:
        """Log progress information.

        Args:
            current: Current step/iteration number
            total: Total number of steps/iterations
            prefix: Prefix text for the progress message. Default: 'Progress'
        """
        percentage = (current / total) * 100 if total > 0 else 0
        self.log_info("%s: %d/%d (%.1f%%)", prefix, current, total, percentage)
