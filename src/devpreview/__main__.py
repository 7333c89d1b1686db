from devpreview.cli.commands import preview_app

app = preview_app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
