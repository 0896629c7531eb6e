# barberpro/scheduler.py
# Execução única das rotinas periódicas (chamado pelo cron: python -m barberpro.scheduler)
import logging
from datetime import datetime

import pytz

from barberpro.core.db import init_firebase
from barberpro.core.deps import get_iugu_client
from barberpro.services import booking_service, subscription_service, whatsapp_service

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


# --- TAREFA 1: Lembretes de 1 hora por WhatsApp ---
def run_reminders(db, client) -> int:
    logging.info("[Scheduler/Lembretes] Iniciando busca por lembretes...")
    try:
        return booking_service.send_booking_reminders(db, client)["processed"]
    except Exception as e:
        logging.exception(f"[Scheduler/Lembretes] Erro CRÍTICO durante o envio de lembretes: {e}")
        return 0


# --- TAREFA 2: Régua de cobrança (assinaturas past_due) ---
def run_dunning(db, iugu, now=None) -> dict:
    logging.info("[Scheduler/Dunning] Verificando assinaturas em atraso...")
    try:
        return subscription_service.process_dunning(db, iugu, now or datetime.now(pytz.utc))
    except Exception as e:
        logging.exception(f"[Scheduler/Dunning] Erro CRÍTICO na régua de cobrança: {e}")
        return {"warned": 0, "suspended": 0}


# --- TAREFA 3: Fila de mensagens de cobrança ---
def run_flush(db, client) -> dict:
    logging.info("[Scheduler/WhatsApp] Enviando mensagens pendentes...")
    try:
        return whatsapp_service.flush_pending_messages(db, client)
    except Exception as e:
        logging.exception(f"[Scheduler/WhatsApp] Erro CRÍTICO ao esvaziar a fila: {e}")
        return {"sent": 0, "failed": 0, "skipped": 0}


def run_all(db, client, iugu) -> dict:
    results = {
        "reminders": run_reminders(db, client),
        "dunning": run_dunning(db, iugu),
        "messages": run_flush(db, client),
    }
    logging.info(f"[Scheduler] Execução concluída: {results}")
    return results


if __name__ == "__main__":
    logging.info("[Scheduler] Iniciando execução das tarefas agendadas...")
    db = init_firebase()
    run_all(db, whatsapp_service.WhatsAppClient(), get_iugu_client(db))
