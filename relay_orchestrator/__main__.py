from relay_orchestrator.orchestrator import run

run()
