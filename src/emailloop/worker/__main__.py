from emailloop.worker.main import run

run()
