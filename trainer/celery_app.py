"""Celery application for parallel Stockfish leaf evaluation."""

from celery import Celery

from config import get_redis_url

REDIS_URL = get_redis_url()

app = Celery("repertoire_trainer", broker=REDIS_URL, backend=REDIS_URL)
app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)


@app.task(bind=True, max_retries=3)
def evaluate_position_task(self, fen: str, stockfish_path: str, movetime: float):
    """Celery task: score text for one position after movetime seconds."""
    import chess.engine
    from analysis import evaluate_position

    try:
        with chess.engine.SimpleEngine.popen_uci(stockfish_path) as engine:
            return evaluate_position(engine, fen, movetime)
    except Exception as exc:
        raise self.retry(exc=exc, countdown=5)
