from quonitor.main import run

run()
