#!/usr/bin/env python3
"""Development server runner"""
import atexit
import os

from dbackup import create_app
from dbackup.scheduler import init_scheduler, start_scheduler, stop_scheduler

if __name__ == '__main__':
    # Use development config for local testing
    app = create_app('development')

    # The reloader would start a second scheduler in the child process
    init_scheduler(app)
    start_scheduler(app)
    atexit.register(stop_scheduler, app)

    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=True, use_reloader=False)
