# psiagenda/__main__.py
# Permite rodar: python -m psiagenda <subcomando>
from .main import main

if __name__ == "__main__":
    raise SystemExit(main())
