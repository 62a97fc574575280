#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Version tag of the clone tooling.

Shown by ``clone_database.py --version`` and stamped into the rendered report
and the JSON run summary written by deploy_report.py.
"""

__version__ = "0.3.2"
