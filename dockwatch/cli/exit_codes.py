"""Standard exit codes for the dockwatch CLI.

This module defines the exit codes used across the dockwatch CLI
for consistent error reporting and scripting support.
"""


class ExitCode:
    """Standard exit codes for the dockwatch CLI.
    
    These codes follow common Unix conventions where possible:
    - 0: Success
    - 1: General error
    - 130: Terminated by Ctrl+C (SIGINT)
    
    dockwatch-specific codes start at 2:
    - 2: Configuration error (bad cron, bad interval, unknown job type)
    - 3: Job handler raised during execution
    - 4: Persistence (database) error
    - 5: Job or intent is already running
    - 7: Invalid argument
    - 8: Not found
    """
    
    # Standard success
    SUCCESS = 0
    
    # General errors
    GENERAL_ERROR = 1
    
    # dockwatch-specific errors
    CONFIGURATION_ERROR = 2
    HANDLER_ERROR = 3
    PERSISTENCE_ERROR = 4
    ALREADY_RUNNING = 5
    INVALID_ARGUMENT = 7
    NOT_FOUND = 8
    
    # Signal-based exits (128 + signal number)
    CANCELLED = 130  # Ctrl+C (SIGINT = 2)
    
    @classmethod
    def get_name(cls, code: int) -> str:
        """Get the name of an exit code.
        
        Args:
            code: The exit code value
            
        Returns:
            Human-readable name for the exit code
        """
        names = {
            cls.SUCCESS: "SUCCESS",
            cls.GENERAL_ERROR: "GENERAL_ERROR",
            cls.CONFIGURATION_ERROR: "CONFIGURATION_ERROR",
            cls.HANDLER_ERROR: "HANDLER_ERROR",
            cls.PERSISTENCE_ERROR: "PERSISTENCE_ERROR",
            cls.ALREADY_RUNNING: "ALREADY_RUNNING",
            cls.INVALID_ARGUMENT: "INVALID_ARGUMENT",
            cls.NOT_FOUND: "NOT_FOUND",
            cls.CANCELLED: "CANCELLED",
        }
        return names.get(code, f"UNKNOWN({code})")
    
    @classmethod
    def get_description(cls, code: int) -> str:
        """Get the description of an exit code.
        
        Args:
            code: The exit code value
            
        Returns:
            Human-readable description for the exit code
        """
        descriptions = {
            cls.SUCCESS: "Operation completed successfully",
            cls.GENERAL_ERROR: "An unexpected error occurred",
            cls.CONFIGURATION_ERROR: "Invalid schedule, interval or job configuration",
            cls.HANDLER_ERROR: "A job handler failed during execution",
            cls.PERSISTENCE_ERROR: "The run-record store could not be read or written",
            cls.ALREADY_RUNNING: "The job or intent is already running",
            cls.INVALID_ARGUMENT: "Invalid command-line argument",
            cls.NOT_FOUND: "Requested resource not found",
            cls.CANCELLED: "Operation cancelled by user",
        }
        return descriptions.get(code, f"Unknown exit code: {code}")
