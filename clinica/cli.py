from __future__ import annotations

import argparse
from datetime import date

from clinica.appointments import professionals_for_service, services_for_professional
from clinica.availability import available_slots
from clinica.billing import create_invoice_for_appointment
from clinica.catalog import list_clients_flat, list_consultations_flat
from clinica.config import configure_logging
from clinica.db import init_db, reset_db
from clinica.search import prefill_from_query, search_clients
from clinica.seed import seed_base


def cmd_init(args: argparse.Namespace) -> None:
    if args.reset:
        reset_db()
    org_id = seed_base()
    print(f"DB inizializzato e seed completato (organizzazione {org_id}).")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "professionisti":
        for p in professionals_for_service(args.org):
            print(f"{p['id']} | {p['name']}")
    elif args.entity == "clienti":
        for c in list_clients_flat(args.org):
            print(f"{c['id']} | {c['name']} | {c['phone'] or '-'} | {c['email'] or '-'}")
    elif args.entity == "servizi":
        for sv in services_for_professional(args.org):
            print(f"{sv['id']} | {sv['name']} ({sv['duration']} min) | {sv['price']} EUR")
    elif args.entity == "sale":
        for c in list_consultations_flat(args.org):
            print(f"{c['id']} | {c['name']}")


def cmd_search(args: argparse.Namespace) -> None:
    matches = search_clients(args.org, args.query)
    if not matches:
        prefill = prefill_from_query(args.query)
        print("Nessun cliente trovato. Dati per un nuovo cliente:", prefill)
        return
    for m in matches:
        print(f"{m.id} | {m.name} | {m.phone or '-'} | {m.email or '-'} [{m.match_type}]")


def cmd_slots(args: argparse.Namespace) -> None:
    day = date.fromisoformat(args.day)
    slots = available_slots(args.professional_id, args.service_id, day)
    if not slots:
        print("Nessuno slot libero.")
        return
    for slot in slots:
        print(f"{slot['start_time']} - {slot['end_time']}")


def cmd_invoice(args: argparse.Namespace) -> None:
    result = create_invoice_for_appointment(args.appointment_id)
    print(f"{result.message} Numero: {result.invoice_number} | Totale: {result.total_amount} EUR")
    if result.pdf_url:
        print(f"PDF: {result.pdf_url}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinica", description="CLI Clinica (operazioni di servizio)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea DB e carica seed")
    p_init.add_argument("--reset", action="store_true", help="Elimina e ricrea le tabelle prima del seed")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="Lista entità")
    p_list.add_argument("entity", choices=["professionisti", "clienti", "servizi", "sale"])
    p_list.add_argument("--org", type=int, default=1)
    p_list.set_defaults(func=cmd_list)

    p_search = sub.add_parser("search", help="Cerca clienti per telefono, nome o email")
    p_search.add_argument("query")
    p_search.add_argument("--org", type=int, default=1)
    p_search.set_defaults(func=cmd_search)

    p_slots = sub.add_parser("slots", help="Slot liberi di un professionista per un servizio")
    p_slots.add_argument("--professional-id", required=True)
    p_slots.add_argument("--service-id", type=int, required=True)
    p_slots.add_argument("--day", required=True, help="Data ISO es: 2026-01-14")
    p_slots.set_defaults(func=cmd_slots)

    p_inv = sub.add_parser("invoice", help="Genera la fattura di un appuntamento")
    p_inv.add_argument("--appointment-id", type=int, required=True)
    p_inv.set_defaults(func=cmd_invoice)

    return p


def main() -> None:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args()
    init_db()  # garantisce tabelle
    args.func(args)


if __name__ == "__main__":
    main()
