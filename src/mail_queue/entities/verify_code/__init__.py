# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
from .table import INVALID, UNUSED, USED, VerifyCodesTable

__all__ = ["INVALID", "UNUSED", "USED", "VerifyCodesTable"]
