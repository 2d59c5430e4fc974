# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from dataclasses import dataclass

@dataclass(frozen=True)
class ExecutionContext:
    """
    controls how commands are executed

    dry_run: log commands instead of running them
    skip_validation: phases skip their own prerequisite checks
        (set when an orchestrating command already validated)
    """

    dry_run: bool = False
    skip_validation: bool = False
