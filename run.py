#!/usr/bin/env python3
"""Backup service runner"""
import sys

from redis_backup.service import main

if __name__ == '__main__':
    sys.exit(main())
