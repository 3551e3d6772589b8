"""
Order processing and job orchestration.

  admission: concurrency ceiling, throttled FIFO queue
  adapters: provider contract (single channel / fan-out)
  monitor: polling session until aggregation
  orchestrator: admission → submission → monitoring → delivery / refund
  routes: FastAPI router for order status and sweeps
"""
