"""
Backend applicativo Clinica.

Struttura:
- db.py, models.py        : engine, sessioni e modelli ORM SQLAlchemy
- timegrid.py             : griglia oraria del calendario (posizioni, pause, slot liberi)
- availability.py         : disponibilità dei professionisti e vista calendario
- appointments.py         : form e CRUD appuntamenti
- search.py               : ricerca clienti con debounce
- medical_history.py      : storia clinica (IMC, campi personalizzati)
- follow_ups.py, ai_client.py : seguimenti, trascrizione vocale e miglioramento AI
- group_activities.py     : attività di gruppo, serie ricorrenti, partecipanti
- waiting_list.py         : lista d'attesa
- billing.py, pdf_invoice.py, storage.py : fatturazione, PDF e archivio
- seed.py / cli.py / api_main.py : dati demo, CLI operatore, API FastAPI
"""
