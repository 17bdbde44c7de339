"""Allow ``python -m cloudvm`` to run the command line."""

if __name__ == '__main__':
    from cloudvm.cli.main import main

    main()
