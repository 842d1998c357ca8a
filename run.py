#!/usr/bin/env python3
"""Backup runner for cron and manual use"""
from dbbackup.cli import app

if __name__ == '__main__':
    app()
