from .dependency_check import check_recorder_dependencies, exit_status, format_report, missing_dependencies

__all__ = ["check_recorder_dependencies", "exit_status", "format_report", "missing_dependencies"]
