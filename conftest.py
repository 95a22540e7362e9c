# Keeps the top-level modules importable when pytest runs from a source checkout.
