from indexer.main import main

if __name__ == "__main__":
    main()
