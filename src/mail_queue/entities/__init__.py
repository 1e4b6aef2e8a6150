# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table managers for the mail queue database."""

from .email_task import EmailTasksTable
from .email_template import EmailTemplatesTable
from .rate_counter import RateCountersTable
from .send_log import SendLogTable
from .verify_code import VerifyCodesTable

__all__ = [
    "EmailTasksTable",
    "EmailTemplatesTable",
    "RateCountersTable",
    "SendLogTable",
    "VerifyCodesTable",
]
