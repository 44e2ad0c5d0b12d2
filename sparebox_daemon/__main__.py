"""python -m sparebox_daemon"""
from sparebox_daemon.cli import main

main()
