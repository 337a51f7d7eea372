"""Hospital front-desk domain: appointments, consultations and billing."""
