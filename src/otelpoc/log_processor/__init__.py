"""Log-Processor-Funktion und Mock-Runtime."""
