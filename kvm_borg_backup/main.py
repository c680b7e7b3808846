#!/usr/bin/env python3
"""
Main entry point for KVM borg backup
"""
from kvm_borg_backup.cli import app

if __name__ == "__main__":
    app()
