# archcrypt/utils/executor.py

import subprocess
import shlex
from typing import Tuple, Optional, Union, List

from archcrypt.utils.exceptions import (
    ShellCommandError,
    CommandNotFoundError,
    CommandTimeoutError,
    InvalidCommandError,
    PermissionDeniedError,
)
from archcrypt.utils.logger import RichAppLogger

DRY_RUN_STDOUT = "DRY_RUN_STDOUT"
DRY_RUN_STDERR = "DRY_RUN_STDERR"


def _to_text(stream) -> str:
    if not stream:
        return ""
    if isinstance(stream, bytes):
        return stream.decode(errors="replace")
    return stream


class Executor:
    """
    Executes external commands for the provisioning stages.

    The logger is injected, every command is time-bounded, commands can be
    wrapped in ``arch-chroot`` for the new root, and secrets are fed through
    stdin (``input=``) so they never show up on argv, in the process list or
    in the log.
    """

    def __init__(self,
                 logger_instance: RichAppLogger,
                 default_timeout: Optional[float] = 30.0,
                 chroot_path: str = "/mnt",
                 dry_run: bool = False):
        self.logger = logger_instance

        if default_timeout is not None and default_timeout <= 0:
            self.logger.error("Default timeout must be a positive number or None.")
            raise ValueError("Default timeout must be a positive number or None.")
        if not isinstance(chroot_path, str) or not chroot_path:
            self.logger.error("Chroot path must be a non-empty string.")
            raise ValueError("Chroot path must be a non-empty string.")

        self._default_timeout = default_timeout
        self._chroot_path = chroot_path
        self.dry_run = dry_run
        self.logger.debug(f"Executor initialized with default_timeout: {self._default_timeout}, "
                          f"chroot_path: {self._chroot_path}, dry_run: {self.dry_run}")

    @property
    def chroot_path(self) -> str:
        return self._chroot_path

    def _prepare_command(self, command: Union[str, list], chroot: bool) -> List[str]:
        """
        Prepares the command for execution by shlex.split if it's a string,
        and prepends arch-chroot if chroot is True.
        """
        if not command:
            self.logger.error("Attempted to prepare an empty command.")
            raise InvalidCommandError(str(command), "Command cannot be empty.")

        if isinstance(command, str):
            try:
                parsed_command = shlex.split(command)
            except ValueError as e:
                self.logger.error(f"Failed to parse command string '{command}': {e}")
                raise InvalidCommandError(command, f"Failed to parse command string: {e}")
        elif isinstance(command, list):
            if not all(isinstance(arg, str) for arg in command):
                raise InvalidCommandError(str(command), "All elements in command list must be strings.")
            parsed_command = command
        else:
            self.logger.error(f"Invalid command type: {type(command)}. Expected str or list.")
            raise InvalidCommandError(str(command), "Command must be a string or a list of strings.")

        if chroot:
            return ["arch-chroot", self._chroot_path] + parsed_command
        return parsed_command

    def execute_command(self,
                        command: Union[str, list],
                        capture_output: bool = True,
                        timeout: Optional[float] = None,
                        check: bool = True,
                        input: Optional[str] = None,
                        cwd: Optional[str] = None
                        ) -> Tuple[int, str, str]:
        """
        Executes a command using subprocess.run. This is the low-level execution method.
        ``input`` is written to stdin and is never logged.
        """
        actual_timeout = timeout if timeout is not None else self._default_timeout
        cmd_string_for_log = shlex.join(command) if isinstance(command, list) else command
        stdin_for_log = "<redacted>" if input is not None else "none"

        self.logger.debug(f"Attempting low-level execution: '{cmd_string_for_log}' "
                          f"timeout={actual_timeout}s, capture_output={capture_output}, check={check}, stdin={stdin_for_log}")

        command_to_execute = self._prepare_command(command, chroot=False)

        try:
            process = subprocess.run(
                command_to_execute,
                capture_output=capture_output,
                text=True,
                input=input,
                timeout=actual_timeout,
                check=False,
                cwd=cwd
            )
        except FileNotFoundError:
            self.logger.error(f"Command '{cmd_string_for_log}' not found. Ensure it's in the system's PATH.")
            raise CommandNotFoundError(command=cmd_string_for_log, stdout="", stderr="Command not found. Check PATH.")
        except PermissionError:
            self.logger.error(f"Permission denied executing '{cmd_string_for_log}'.")
            raise PermissionDeniedError(command=cmd_string_for_log, stderr="Permission denied.")
        except subprocess.TimeoutExpired as e:
            self.logger.warning(f"Command '{cmd_string_for_log}' timed out after {actual_timeout} seconds.")
            raise CommandTimeoutError(command=cmd_string_for_log, timeout=actual_timeout,
                                      stdout=_to_text(e.stdout), stderr=_to_text(e.stderr))
        except (TypeError, ValueError) as e:
            self.logger.error(f"Argument error during low-level command execution '{cmd_string_for_log}': {e}")
            raise InvalidCommandError(cmd_string_for_log, f"Argument error in command execution: {e}")

        stdout = process.stdout if capture_output and process.stdout else ""
        stderr = process.stderr if capture_output and process.stderr else ""
        exit_code = process.returncode

        if check and exit_code != 0:
            self.logger.error(f"Command: '{cmd_string_for_log}', Exit Code: {exit_code}, Stderr: {stderr.strip()}")

            if "command not found" in stderr.lower() or exit_code == 127:
                raise CommandNotFoundError(command=cmd_string_for_log, stdout=stdout, stderr=stderr)
            elif "permission denied" in stderr.lower() or exit_code == 126:
                raise PermissionDeniedError(command=cmd_string_for_log, stdout=stdout, stderr=stderr)
            raise ShellCommandError(
                command=cmd_string_for_log,
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                message=f"Command failed with exit code {exit_code}"
            )

        self.logger.debug(f"Low-level execution of '{cmd_string_for_log}' completed with exit code {exit_code}")
        return exit_code, stdout, stderr

    def run(self,
            description: str,
            command: Union[str, list],
            chroot: bool = False,
            dryrun: Optional[bool] = None,
            capture_output: bool = True,
            timeout: Optional[float] = None,
            check: bool = True,
            input: Optional[str] = None,
            cwd: Optional[str] = None
            ) -> Tuple[int, str, str]:
        """
        Executes a command inside the RichAppLogger's execution_step context manager
        for TUI feedback and logging. ``dryrun`` defaults to the executor-wide setting.
        """
        dryrun = self.dry_run if dryrun is None else dryrun

        prepared_command_list = self._prepare_command(command, chroot=chroot)

        if dryrun:
            self.logger.info(f"DRY RUN: Execution skipped for: '{description}'")
            self.logger.debug(f"DRY RUN COMMAND (Prepared): {shlex.join(prepared_command_list)}")
            return 0, DRY_RUN_STDOUT, DRY_RUN_STDERR

        # execution_step prints [COMPLETED]/[CRITICAL] and re-raises on failure
        with self.logger.execution_step(description):

            exit_code, stdout, stderr = self.execute_command(
                command=prepared_command_list,
                capture_output=capture_output,
                timeout=timeout,
                check=check,
                input=input,
                cwd=cwd
            )

            self.logger.debug(f"Command '{description}' completed. Output details:")
            if stdout:
                self.logger.debug(f"  Stdout:\n{stdout.strip()}")
            if stderr:
                self.logger.debug(f"  Stderr:\n{stderr.strip()}")

            return exit_code, stdout, stderr
