import sys

from openvector_confidential_ledger.cli import parse_args
from openvector_confidential_ledger.app import App

def main():
    args = parse_args()
    app = App(args)
    sys.exit(app.run())

if __name__ == "__main__":
    main()
