#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Application entrypoint for CipherDiary.

This file is intentionally minimal. It only boots the Textual UI app.
"""
from __future__ import annotations

from cipherdiary.ui import main


if __name__ == "__main__":
    main()
