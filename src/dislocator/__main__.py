from dislocator.main import run

run()
